"""
ULTRANSC — setuptools build script.

Usage:
    # Development install (editable, links to source):
    pip install -e .

    # With test extras:
    pip install -e ".[test]"

Installs the `ultransc` console command.
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "ultransc"

setup(
    name=APP_NAME,
    version="0.5.0",
    description="Local, resumable batch transcription with whisper.cpp",
    packages=find_namespace_packages(include=["ultransc", "ultransc.*"]),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "ultransc=ultransc.cli.commands:main",
        ],
    },
)
