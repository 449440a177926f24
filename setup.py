from setuptools import setup, find_packages

setup(
    name="hybrid_memory",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        "tqdm>=4.60",
        # Graph store (async SQLite)
        "aiosqlite>=0.19.0",
        # Vector index (brute-force cosine similarity)
        "numpy>=1.26.0",
    ],
    extras_require={
        # Remote embedding providers (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "hybrid-memory=hybrid_memory.cli:main",
        ],
    },
    python_requires=">=3.10",
    description="Hybrid memory engine combining vector search with a typed knowledge graph.",
)
