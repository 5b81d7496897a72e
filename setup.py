from setuptools import setup

setup(
    name="urban_stream_wq_trends",
    version="0.1.0",
    description="Cleaning, covariate derivation and GAMM/GLS trend models for urban stream water quality data",
    author="Urban Streams Monitoring Program",
    package_dir={"": "src"},
    py_modules=[
        "config",
        "covariates",
        "data_cleaning",
        "data_loading",
        "main",
        "models",
        "plotting",
        "report",
        "trend_analysis",
    ],
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "seaborn",
        "scipy",
        "statsmodels",
        "patsy",
        "pymannkendall",
        "geopandas",
        "openpyxl",
    ],
    extras_require={
        "test": ["pytest"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
)
