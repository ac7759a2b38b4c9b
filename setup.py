from setuptools import setup, find_packages
import pathlib

# Read the contents of README.md
here = pathlib.Path(__file__).parent.resolve()
long_description = (here / "README.md").read_text(encoding="utf-8")

setup(
    name="rag-tenant-qa",
    version="1.0.0",
    description="Multi-tenant retrieval-augmented question answering with hybrid search and cited answers",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Text Processing :: Linguistic"
    ],
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.24",
        "rank-bm25>=0.2.2",
        "openai>=1.30",
        "python-dotenv>=1.0",
        "pydantic>=2.5",
        "fastapi>=0.110",
        "uvicorn>=0.27",
    ],
    extras_require={
        "local": ["sentence-transformers>=2.2"],
        "test": ["pytest>=7.4", "pytest-asyncio>=0.23", "httpx>=0.25"],
    },
    entry_points={
        "console_scripts": [
            "rag-qa=rag_tenant_qa.api:main",
        ],
    },
)
