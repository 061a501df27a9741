"""Setup configuration for CADENCE."""

from setuptools import find_packages, setup

setup(
    name="cadence-engine",
    version="0.3.0",
    description="Behavioral baseline engine: unsupervised similarity, anomaly and drift diagnostics",
    author="CADENCE",
    python_requires=">=3.11",
    packages=find_packages(where="src", include=["cadence*"]),
    package_dir={"": "src"},
    install_requires=[
        "numpy>=1.26.0",
        "pandas>=2.2.0",
        "pydantic>=2.6.0",
        "pydantic-settings>=2.1.0",
        "pyarrow>=15.0.0",
        "scikit-learn>=1.4.0",
    ],
    entry_points={
        "console_scripts": [
            "cadence=cadence.cli:cli_entry",
        ],
    },
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "python-dotenv>=1.0.0",
        ],
    },
)
