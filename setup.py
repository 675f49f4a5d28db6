#!/usr/bin/env python3
"""
Setup script for the Jibri queue client
"""

from setuptools import setup, find_packages

setup(
    name="jibri-queue-client",
    version="0.0.1",
    description="Client for the Jibri waiting queue protocol over XMPP",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "slixmpp>=1.9.0",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'jibri-queue=jibri_queue.cli:main',
        ],
    },
)
