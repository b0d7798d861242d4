#!/usr/bin/env python3
"""
Setup script for the rollout manager.
This installs the orchestrator package and its command line entry point.
"""

from setuptools import setup, find_packages

setup(
    name="rollout-manager",
    version="1.0.0",
    description="Digest-pinned rolling deployments with health and autoscale verification",
    python_requires=">=3.9",
    packages=find_packages(include=["rollout_manager", "rollout_manager.*"]),
    install_requires=[
        "pydantic>=2.0",
        "httpx>=0.24",
        "aiofiles>=23.0",
        "PyYAML>=6.0",
        "tabulate>=0.9",
        "kubernetes>=28.1",
        "urllib3>=1.26",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "rollout-manager=rollout_manager.__main__:main",
        ],
    },
)
