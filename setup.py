"""
authdb setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="authdb",
    version="1.0.0",
    description="authdb — Database connection resolution, pooling and failover for the auth backend",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "authdb=authdb.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "pydantic>=2.5",
        "pyyaml>=6.0",
        "PyMySQL>=1.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
