from setuptools import setup, find_packages

setup(
    name="mkdocs-cppdoc",
    version="0.1.0",
    description="MkDocs plugin for C++ API docs with cross-references and doc-tests",
    keywords="mkdocs cppdoc c++ libclang doctest documentation python",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "mkdocs>=1.6",
        "libclang>=16.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    classifiers = [
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Documentation",
        "Topic :: Software Development :: Documentation",
        "Framework :: MkDocs",
    ],
    entry_points={
        "mkdocs.plugins": [
            "cppdoc = mkdocs_cppdoc.plugin:CppdocPlugin",
        ],
    },
)
