#!/usr/bin/env python3
import argparse
import sys

from upm.errors import PartialFailure, UPMError
from upm.manager import PackageManager
from upm.models import OperationStatus, OperationType, format_size


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Unified Package Manager',
        prog='upm'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Search command
    search_parser = subparsers.add_parser('search', help='Search for packages')
    search_parser.add_argument('query', help='Search query')
    search_parser.add_argument('--limit', type=int, default=50, help='Maximum number of results')

    # List command
    subparsers.add_parser('list', help='List installed packages')

    # Install command
    install_parser = subparsers.add_parser('install', help='Install packages')
    install_parser.add_argument('packages', nargs='+',
                                help="Packages, e.g. 'hello', 'tar:hello', 'hello>=1.0' or 'hello@2.0'")
    install_parser.add_argument('--reinstall', action='store_true', help='Reinstall installed packages')
    install_parser.add_argument('--with-optional', action='store_true', help='Include optional dependencies')
    install_parser.add_argument('--dry-run', action='store_true', help='Show the plan without executing it')

    # Remove command
    remove_parser = subparsers.add_parser('remove', help='Remove packages')
    remove_parser.add_argument('packages', nargs='+', help='Packages to remove')
    remove_parser.add_argument('--force', action='store_true',
                               help='Remove exactly the given packages, leaving dependents installed')
    remove_parser.add_argument('--keep-dependencies', action='store_true',
                               help='Keep dependencies that are no longer needed by any installed package')
    remove_parser.add_argument('--dry-run', action='store_true', help='Show the plan without executing it')

    # Update command
    update_parser = subparsers.add_parser('update', help='Upgrade installed packages')
    update_parser.add_argument('packages', nargs='*', help='Packages to upgrade (default: all)')
    update_parser.add_argument('--dry-run', action='store_true', help='Show the plan without executing it')

    # Rollback command
    rollback_parser = subparsers.add_parser('rollback', help='Restore the installed set of a snapshot')
    rollback_parser.add_argument('snapshot_id', help='Snapshot ID (see `upm snapshots`)')

    # History command
    history_parser = subparsers.add_parser('history', help='Show recent operations')
    history_parser.add_argument('--limit', type=int, default=20)

    # Snapshots command
    snapshots_parser = subparsers.add_parser('snapshots', help='Show recent snapshots')
    snapshots_parser.add_argument('--limit', type=int, default=20)

    # Refresh command
    refresh_parser = subparsers.add_parser('refresh', help='Refresh repository metadata')
    refresh_parser.add_argument('backend', nargs='?', help='Backend to refresh (default: all available)')

    # Repository commands
    repo_parser = subparsers.add_parser('repo', help='Manage repositories')
    repo_subparsers = repo_parser.add_subparsers(dest='repo_command', help='Repository commands')

    repo_add_parser = repo_subparsers.add_parser('add', help='Add a repository')
    repo_add_parser.add_argument('backend', help='Backend ID, e.g. tar, apt, flatpak')
    repo_add_parser.add_argument('url', help='Repository URL')
    repo_add_parser.add_argument('--name', help='Display name (default: the URL)')
    repo_add_parser.add_argument('--priority', type=int, default=500, help='Lower numbers win (default: 500)')

    repo_list_parser = repo_subparsers.add_parser('list', help='List repositories')
    repo_list_parser.add_argument('backend', nargs='?', help='Only show this backend')

    repo_remove_parser = repo_subparsers.add_parser('remove', help='Remove a repository')
    repo_remove_parser.add_argument('backend', help='Backend ID')
    repo_remove_parser.add_argument('url', help='Repository URL')

    return parser.parse_args(argv)


def get_manager():
    """Create the package manager from environment and stored preferences"""
    return PackageManager()


def _report(operation, action):
    """Print the outcome of an operation and return the exit code"""
    if operation is None:
        print("Nothing to do.")
        return 0
    if operation.status == OperationStatus.COMPLETED:
        print(f"{action} successful!")
        return 0
    print(f"{action} failed and was rolled back: {operation.error_message}")
    return 1


def _run_plan(manager, plan, dry_run, action):
    print(plan.describe())
    if dry_run or plan.is_empty:
        return 0
    return _report(manager.execute(plan), action)


def cmd_search(args, manager):
    """Execute search command"""
    print(f"Searching for '{args.query}'...\n")
    results = manager.search(args.query, limit=args.limit)

    if not results:
        print("  No results found")
        return 0
    for result in results:
        print(f"  {result.id} - {result.version}")
        if result.description:
            print(f"    {result.description[:80]}")
    return 0


def cmd_list(args, manager):
    """Execute list command"""
    installed = manager.list_installed()
    if not installed:
        print("No packages installed")
        return 0

    print("Installed packages:\n")
    for pkg in installed:
        size = f"  ({format_size(pkg.size_bytes)})" if pkg.size_bytes else ""
        print(f"  {pkg.id} - {pkg.installed_version}{size}")
    return 0


def cmd_install(args, manager):
    """Execute install command"""
    plan = manager.plan(OperationType.INSTALL, args.packages,
                        reinstall=args.reinstall, with_optional=args.with_optional)
    return _run_plan(manager, plan, args.dry_run, "Installation")


def cmd_remove(args, manager):
    """Execute remove command"""
    plan = manager.plan(OperationType.UNINSTALL, args.packages, force=args.force,
                        remove_dependencies=not args.keep_dependencies)
    return _run_plan(manager, plan, args.dry_run, "Removal")


def cmd_update(args, manager):
    """Execute update command"""
    plan = manager.plan(OperationType.UPDATE, args.packages)
    return _run_plan(manager, plan, args.dry_run, "Update")


def cmd_rollback(args, manager):
    """Execute rollback command"""
    print(f"Rolling back to snapshot {args.snapshot_id}...")
    return _report(manager.rollback(args.snapshot_id), "Rollback")


def cmd_history(args, manager):
    """Execute history command"""
    operations = manager.history(limit=args.limit)
    if not operations:
        print("No operations recorded")
        return 0
    for operation in operations:
        when = operation.started_at.strftime('%Y-%m-%d %H:%M:%S') if operation.started_at else '-'
        print(f"  {operation.id}  {when}  {operation.operation_type.value:<9} "
              f"{operation.status.value:<11} {', '.join(operation.packages)}")
        if operation.error_message:
            print(f"    {operation.error_message}")
    return 0


def cmd_snapshots(args, manager):
    """Execute snapshots command"""
    snapshots = manager.snapshots(limit=args.limit)
    if not snapshots:
        print("No snapshots recorded")
        return 0
    for snapshot in snapshots:
        flag = "" if snapshot.can_rollback else "  [not restorable]"
        print(f"  {snapshot.id}  {snapshot.created_at:%Y-%m-%d %H:%M:%S}  "
              f"{snapshot.commit_hash[:12]}  {snapshot.description}{flag}")
    return 0


def cmd_refresh(args, manager):
    """Execute refresh command"""
    counts = manager.refresh(args.backend)
    if not counts:
        print("No backends refreshed")
    for backend_id, count in sorted(counts.items()):
        print(f"[{backend_id.upper()}] {count} packages")
    return 0


def cmd_repo(args, manager):
    """Execute repository commands"""
    if args.repo_command == 'add':
        repository = manager.add_repository(args.backend, args.url, name=args.name, priority=args.priority)
        print(f"Added {repository.backend_id} repository {repository.name} (priority {repository.priority})")
        return 0

    if args.repo_command == 'remove':
        if not manager.remove_repository(args.backend, args.url):
            print(f"Error: No {args.backend} repository {args.url}")
            return 1
        print(f"Removed {args.backend} repository {args.url}")
        return 0

    if args.repo_command == 'list':
        repositories = manager.list_repositories(args.backend)
        if not repositories:
            print("No repositories configured")
            return 0
        for repo in repositories:
            synced = repo.last_synced.strftime('%Y-%m-%d %H:%M') if repo.last_synced else 'never'
            state = "enabled" if repo.enabled else "disabled"
            print(f"  [{repo.backend_id}] {repo.name}  {repo.url}  priority={repo.priority}  "
                  f"{state}  synced={synced}")
        return 0

    print("Error: No repository command specified. Use 'upm repo --help' for usage.")
    return 1


COMMANDS = {
    'search': cmd_search,
    'list': cmd_list,
    'install': cmd_install,
    'remove': cmd_remove,
    'update': cmd_update,
    'rollback': cmd_rollback,
    'history': cmd_history,
    'snapshots': cmd_snapshots,
    'refresh': cmd_refresh,
    'repo': cmd_repo,
}


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    if not args.command:
        print("Error: No command specified. Use --help for usage.")
        return 1

    try:
        manager = get_manager()
    except UPMError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](args, manager)
    except PartialFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        print("The previous state could not be fully restored; check the affected packages manually.",
              file=sys.stderr)
        return 2
    except UPMError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        manager.close()


if __name__ == '__main__':
    sys.exit(main())
