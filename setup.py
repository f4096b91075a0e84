# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="docrender",
    version="1.0.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["docrender", "docrender.*"]),
    description="Background document conversion to PNG pages and thumbnails, with OCR and pluggable storage.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.9",

    install_requires=[
        "PyMuPDF",
        "Pillow>=9.1",
        "pytesseract",
        "requests",
        "boto3",
        "azure-storage-blob",
        "python-slugify",
        "tqdm",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        'console_scripts': [
            'docrender=docrender.cli:main',
        ],
    },
)
