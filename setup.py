"""Setup script for the payment engine."""

from setuptools import setup, find_packages

setup(
    name="payment-engine",
    version="0.1.0",
    description="Multi-provider payment orchestration and reconciliation engine",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["payment_engine", "payment_engine.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
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
    entry_points={
        "console_scripts": [
            "payment-engine-api=payment_engine.api.main:main",
            "payment-engine-outbox=payment_engine.workers.outbox_publisher:main",
            "payment-engine-reconcile=payment_engine.workers.reconciliation_worker:main",
            "payment-engine-expire-checkouts=payment_engine.workers.checkout_expiry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
