#!/usr/bin/env python3
"""Setup script for the Zinc language client package."""

import sys

from setuptools import find_packages, setup

# Read version from the package
with open("zinclsp/__init__.py") as f:
    for line in f:
        if line.startswith("__version__"):
            version = line.split("=")[1].strip().strip('"').strip("'")
            break
    else:
        version = "0.0.0"

# Read long description from README
with open("README.md") as f:
    long_description = f.read()

# Display warning about external dependencies
print("""
IMPORTANT: The language server itself is not installed via pip.
Build or install the `zinc_lsp` executable from the Zinc toolchain and put it
on PATH, or point ZINC_SERVER_PATH / --server-path at it.
""", file=sys.stderr)

setup(
    name="zinclsp",
    version=version,
    description="Client-side lifecycle manager for the Zinc language server",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pygls>=1.1.0",
        "lsprotocol>=2023.0.0",
        "pydantic>=2.0.0",
        "click>=8.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "zinclsp=zinclsp.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
)
