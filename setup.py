"""Setup configuration for Lead Enrichment Pipeline."""

from setuptools import setup

setup(
    name="lead_enrichment",
    version="1.0.0",
    description="Location-targeted lead search, validation and enrichment pipeline",
    author="Mark Lerner",
    py_modules=[
        "pipeline_core",
        "geo_store",
        "location_resolver",
        "lead_validator",
        "usage_governor",
        "providers",
        "zip_lookup",
        "enrichment",
        "search_builder",
        "log_capture",
        "lead_pipeline",
    ],
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lead-enrichment=lead_pipeline:main",
        ],
    },
)
