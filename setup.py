# setup.py

from setuptools import setup, find_namespace_packages

VERSION = "0.1.0"
DESCRIPTION = "mirna_activity: per-cell miRNA activity from single-cell RNA-seq, with activity-based clustering."
# Attempt to read the long description from README.md
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        LONG_DESCRIPTION = fh.read()
except FileNotFoundError:
    LONG_DESCRIPTION = DESCRIPTION

setup(
    name="mirna_activity",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    # Subpackages carry no __init__.py
    packages=find_namespace_packages(include=["mirna_activity", "mirna_activity.*"]),
    install_requires=[
        "scanpy>=1.10",
        "anndata>=0.10",
        "pandas>=1.5",
        "numpy>=1.24",
        "scipy>=1.10",
        "matplotlib>=3.5",
        "PyYAML>=6.0",
        "leidenalg>=0.9",
        "igraph>=0.10",
        "decoupler>=2.0",
        "biopython>=1.80",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    entry_points={
        'console_scripts': [
            'mirna-activity=mirna_activity.cli:main',
        ],
    }
)
