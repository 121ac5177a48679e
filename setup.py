"""
ScreenRecap — setuptools build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Run:
    screenrecap run
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "ScreenRecap"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Local macOS screen-recording analysis pipeline",
    packages=find_namespace_packages(include=["recap", "recap.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "screenrecap=main:main",
        ],
    },
)
