"""Setup script for the facecluster package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read README if it exists
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="facecluster",
    version="0.1.0",
    description="Incremental face clustering and identity propagation for photo libraries",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Facecluster Team",
    packages=find_packages(exclude=["tests*", "docs*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.26.0",
        "pandas>=2.2.0",
        "pyarrow>=15.0.0",
        "tqdm>=4.66.0",
        "pyyaml>=6.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
        ],
        "extract": [
            "insightface>=0.7.3",
            "onnxruntime>=1.16.3",
            "opencv-python>=4.9.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "facecluster-run=scripts.run_clustering:main",
            "facecluster-extract=scripts.extract_references:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
