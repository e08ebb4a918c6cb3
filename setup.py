from pathlib import Path
from setuptools import setup, find_packages

README = (Path(__file__).parent / "README.md").read_text(encoding="utf-8")

setup(
    name="mafia-session",
    version="0.1.0",
    description="Host-authoritative session sync for a ten-player Mafia party game over direct TCP links",
    long_description=README,
    long_description_content_type="text/markdown",
    packages=find_packages(include=("mafia", "mafia.*")),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mafia=mafia.cli:main",
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Environment :: Console",
        "Intended Audience :: End Users/Desktop",
        "Topic :: Games/Entertainment",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
