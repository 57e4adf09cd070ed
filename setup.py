from setuptools import setup, find_packages

setup(
    name="fairvrf-oracle",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "web3>=7",
        "eth-account",
        "pydantic>=2",
        "pydantic-settings",
        "python-dotenv",
        "structlog",
        "prometheus_client",
        "click"
    ],
    extras_require={
        "test": [
            "pytest"
        ]
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "fairvrf-oracle=fairvrf.cli:main",
        ],
    }
)
