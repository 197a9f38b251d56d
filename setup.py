from setuptools import setup, find_packages

setup(
    name="pairscan",
    version="0.1.0",
    description="Pairs trading research engine: clustering, cointegration, Kalman hedging and grid validation",
    package_dir={"": "src"},
    packages=find_packages(where="src", exclude=["tests", "tests.*", "examples", "examples.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial :: Investment",
        "Programming Language :: Python :: 3",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.21.0",
        "pandas>=1.3.0",
        "matplotlib>=3.4.0",
        "scipy>=1.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "statsmodels>=0.13.0",
        ],
    },
)
