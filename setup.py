"""Setup script for transcp package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
this_directory = Path(__file__).parent
long_description_path = this_directory / "README.md"

if long_description_path.exists():
    long_description = long_description_path.read_text(encoding='utf-8')
else:
    long_description = "transcp: Transductive Conformal Classification for scikit-learn classifiers"

# Read version
version = {}
with open(this_directory / "transcp" / "version.py") as f:
    exec(f.read(), version)

setup(
    name="transcp",
    version=version['__version__'],
    author=version['__author__'],
    author_email=version['__email__'],
    description=version['__description__'],
    long_description=long_description,
    long_description_content_type="text/markdown",
    url=version['__url__'],
    packages=find_packages(exclude=["tests", "examples", "docs"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Intended Audience :: Developers",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=2.3.0",
        "pandas>=2.3.0",
        "scikit-learn>=1.7.0",
        "scipy>=1.16.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    keywords=[
        "machine-learning",
        "conformal-prediction",
        "transductive-inference",
        "uncertainty-quantification",
        "classification",
    ],
    project_urls={
        "Source": "https://github.com/transcp/transcp",
    },
)
