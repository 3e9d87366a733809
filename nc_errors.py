"""
Error and warning types shared by the NetCDF helpers.

The concrete errors also derive from the builtin exception a caller would
naturally expect (ValueError for bad arguments, OSError for file access), so
existing ``except ValueError`` handlers keep working.
"""

from __future__ import annotations


class NcToolsError(Exception):
    """Base class for every error raised by nc_prime_meridian and nc_mask."""


class ConfigurationError(NcToolsError, ValueError):
    """Invalid arguments: output policy, dimension or variable selection, plan."""


class PreconditionError(NcToolsError, ValueError):
    """The files on disk are not in a state the operation can work from."""


class IOFailure(NcToolsError, OSError):
    """A read, write, create or sync call of the NetCDF library failed."""


class PrimeMeridianWarning(UserWarning):
    """Longitudes already follow the requested convention, or are ambiguous."""
