#!/usr/bin/env python3
# Copyright 2024 The AzureSignTool Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import importlib

from setuptools import find_packages, setup

version = importlib.import_module("azuresigntool").__version__

with open("./README.md") as f:
    long_description = f.read()

setup(
    name="azuresigntool",
    version=version,
    license="Apache-2.0",
    author="AzureSignTool Authors",
    description="Authenticode signing of files with a certificate held in Azure Key Vault",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["test", "test.*"]),
    entry_points={
        "console_scripts": [
            "azuresigntool = azuresigntool._cli:main",
        ]
    },
    platforms="any",
    python_requires=">=3.8",
    install_requires=[
        "azure-core",
        "azure-identity",
        "cryptography>=42",
        "pefile",
        "pydantic>=2",
        "pyjwt",
        "requests",
        "rich",
        "typing_extensions",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "pretend",
            "coverage[toml]",
        ],
        "dev": [
            "build",
            "flake8",
            "black",
            "isort",
            "pytest",
            "pytest-cov",
            "pretend",
            "coverage[toml]",
            "interrogate",
            "mypy",
            "types-requests",
        ],
    },
    classifiers=[
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3",
        "Operating System :: Microsoft :: Windows",
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Topic :: Security :: Cryptography",
    ],
)
