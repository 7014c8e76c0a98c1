"""
Setup configuration for the Bambu printer filament usage bridge
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="printbridge",
    version="1.0.0",
    description="Track filament usage of Bambu printers and report it to a filament inventory API",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="3D Printer Farm Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.31.0,<3.0",
        "paho-mqtt>=2.0.0,<3.0",
        "rich>=13.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.3,<9.0",
            "pytest-cov>=4.1.0,<6.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "printbridge=printbridge.bridge:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
