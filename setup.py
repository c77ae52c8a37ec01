#!/usr/bin/python3
# Setup file for gitexhume
# Copyright (C) 2025 Gitexhume contributors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

tests_require = ["pytest"]


setup(
    name="gitexhume",
    version="0.1.0",
    description="Rebuild a source tree from a .git directory exposed over HTTP",
    license="Apache-2.0 OR GPL-2.0-or-later",
    python_requires=">=3.9",
    packages=["gitexhume"],
    install_requires=["urllib3>=1.25"],
    extras_require={"test": tests_require},
    entry_points={"console_scripts": ["gitexhume=gitexhume.cli:_main"]},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: Apache Software License",
        "License :: OSI Approved :: GNU General Public License v2 or later (GPLv2+)",
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
        "Topic :: Software Development :: Version Control",
    ],
)
