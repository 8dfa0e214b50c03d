"""Setup configuration for agentbus package."""

from setuptools import setup, find_packages

with open("requirements.txt") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]

setup(
    name="agentbus",
    version="0.1.0",
    description="Shared file claims, event log and retry loop for coding agents working on one repository",
    author="m0ntydad0n",
    packages=find_packages(include=["agentbus", "agentbus.*"]),
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "fakeredis>=2.20",
        ],
    },
    entry_points={
        "console_scripts": [
            "agentbus=agentbus.cli:cli",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
