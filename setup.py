#!/usr/bin/env python3
"""
Setup script for Unified Package Manager (UPM)
"""

from setuptools import setup, find_packages

# Read the README file
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Read requirements
with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="universal-package-manager",
    version="2.0.0",
    author="Zorin App Organizer Team",
    author_email="support@zorinos.com",
    description="Cross-ecosystem package manager core with dependency resolution and transactional installs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/pitcany/zorin_app_organizer",
    project_urls={
        "Bug Tracker": "https://github.com/pitcany/zorin_app_organizer/issues",
        "Source Code": "https://github.com/pitcany/zorin_app_organizer",
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Software Distribution",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
        "Environment :: Console",
    ],
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "upm=upm.cli:main",
        ],
    },
    zip_safe=False,
    keywords=['package-manager', 'apt', 'snap', 'flatpak', 'tarball', 'dependency-resolution'],
    platforms=['Linux'],
)
