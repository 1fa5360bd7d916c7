from setuptools import setup, find_packages

setup(
    name="lorekeeper",
    version="0.1.0",
    description="Hybrid retrieval engine for tabletop game sessions",
    author="John Morrissey",
    author_email="john@foundryside.dev",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=[
        "numpy>=1.24.0",
        "requests>=2.25.0",
    ],
    extras_require={
        "local": [
            "sentence-transformers>=2.2.0",
        ],
        "dev": [
            "pytest>=6.0.0",
            "pytest-cov>=2.12.0",
            "black>=21.5b2",
        ],
    },
)
