"""
Exceptions raised by the documentation core.

Only configuration-class problems abort a run. Everything that belongs to a
single file, reference or code block is recorded as a Diagnostic instead and
surfaces in the run report.
"""


class CppdocError(Exception):
    pass


class FrontendError(CppdocError):
    """A source file could not be parsed at all."""

    def __init__(self, path, message):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class ToolchainConfigurationError(CppdocError):
    """The doc-test compiler is missing or cannot build a trivial program."""


class GraphFrozenError(CppdocError):
    pass


class RunCancelled(CppdocError):
    pass
