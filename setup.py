#!/usr/bin/env python3
"""
Setup script for service-deployer.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["service_deployer", "service_deployer.*"]),
)
