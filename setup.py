"""Setup script for locator package."""

from setuptools import setup, find_packages

setup(
    name="location-ecosystem",
    version="0.1.0",
    description="Position acquisition with LRU/TTL caching, adaptive strategies and privacy protection",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
        "pytz>=2023.3",
        "cryptography>=41.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "locator=locator.main:main",
        ],
    },
)
