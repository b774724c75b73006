"""Setup script for livetrack package."""

from setuptools import setup, find_packages

setup(
    name="livetrack",
    version="0.1.0",
    description="Live courier location smoothing, broadcast throttling and route stitching",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "livetrack=livetrack.main:main",
        ],
    },
)
