"""
mkdocs-cppdoc: C++ API Documentation for MkDocs.

Builds a cross-referenced documentation model from C++ sources through
libclang, runs the code examples embedded in doc comments as doc-tests, and
renders everything as browsable API reference pages in MkDocs.
"""

__version__ = "0.1.0"
