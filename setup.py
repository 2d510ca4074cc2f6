"""Setup script for the GridPlay reservation and settlement engine."""

from setuptools import setup, find_packages

setup(
    name="gridplay",
    version="0.1.0",
    description="Square reservation, payment settlement and payout engine for football squares pools",
    author="GridPlay",
    python_requires=">=3.10",
    packages=find_packages(include=["gridplay", "gridplay.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
