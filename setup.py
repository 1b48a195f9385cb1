"""
Setup configuration for admirror package.
"""

from setuptools import setup, find_packages

setup(
    name="admirror",
    version="0.1.0",
    description="Competitor ad creative intelligence: tagging, track classification and convergence",
    packages=find_packages(include=["admirror", "admirror.*"]),
    python_requires=">=3.9",
    install_requires=[
        "supabase>=2.0",
        "pydantic>=2.0",
        "python-dotenv>=1.0",
        "anthropic>=0.30",
        "httpx>=0.25",
        "logfire>=0.40",
        "click>=8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "admirror=admirror.cli.main:cli",
        ],
    },
)
