"""
Meshtastic IRC Bridge Setup Configuration

Installs the bridge packages from src/ together with the
'meshtastic-irc-bridge' console script.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_file.exists():
    requirements = [
        line.strip()
        for line in requirements_file.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.startswith("#")
    ]

setup(
    name="meshtastic-irc-bridge",
    version="1.0.0",
    description="Relay text messages between a Meshtastic mesh channel and an IRC channel",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Meshtastic IRC Bridge Developers",
    license="MIT",

    # Package discovery
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=["main"],

    # Dependencies
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "hypothesis>=6.82.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.10",

    # Entry points
    entry_points={
        "console_scripts": [
            "meshtastic-irc-bridge=main:main",
        ],
    },

    # Classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Communications :: Chat :: Internet Relay Chat",
        "Topic :: Communications :: Ham Radio",
    ],

    # Keywords
    keywords="meshtastic irc bridge mqtt mesh-network lora",
)
