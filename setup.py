#!/usr/bin/env python3
"""
Setup script for the Atlas metrics harvester.
"""

from setuptools import setup, find_packages

setup(
    name="atlas-metrics-harvester",
    version="1.0.0",
    description="Harvests Atlas host and disk metrics into PostgreSQL/TimescaleDB",
    python_requires=">=3.9",
    packages=find_packages(include=["atlas_metrics", "atlas_metrics.*"]),
    install_requires=[
        "pydantic>=2.0",
        "asyncpg>=0.27",
        "httpx>=0.24",
        "PyYAML>=6.0",
        "tabulate>=0.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "atlas-metrics=atlas_metrics.cli:main",
        ],
    },
)
