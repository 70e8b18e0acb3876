# -*- coding: utf-8 -*-
r"""Exceptions raised by strandstate."""


class StrandStateError(Exception):
    """Base class for errors raised by strandstate."""
    pass


class ConfigError(StrandStateError, ValueError):
    """Conflicting or invalid options, malformed interval files, or unknown chromosome references.

    Always fatal: raised before any alignment file is counted.
    """
    pass


class OpenError(StrandStateError, OSError):
    """An alignment file could not be opened or read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class MissingSampleTagError(StrandStateError, ValueError):
    """An alignment header does not carry exactly one sample (`SM`) name in its read groups."""

    def __init__(self, path: str, found: list):
        if found:
            reason = f"found {len(found)} distinct SM tags ({', '.join(sorted(found))})"
        else:
            reason = "found no SM tag"
        super().__init__(f"{path}: each file needs exactly one SM tag in its @RG lines, {reason}")
        self.path = path
        self.found = list(found)


class EstimationError(StrandStateError, ArithmeticError):
    """The fitted negative binomial parameter `p` of a sample is not in (0, 1).

    This usually means degenerate input, e.g. (near-)identical counts in every bin so that
    the variance does not exceed the mean.
    """

    def __init__(self, sampleName: str, p: float):
        super().__init__(
            f"Sample {sampleName}: estimated p={p} is outside (0, 1). "
            f"This indicates degenerate input, e.g. cells with all-identical bin counts."
        )
        self.sampleName = sampleName
        self.p = p
