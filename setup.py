from setuptools import setup, find_packages

setup(
    name="snippet_kb",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        "cryptography>=41.0",
        "tqdm>=4.60",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "snippetkb=snippet_kb.cli:main",
        ],
    },
    description="A local snippet knowledge base with semantic search and an encrypted API key vault.",
)
