"""
Prime-meridian change for a variable stored in a NetCDF file.

User-facing entry point:
- change_prime_meridian: rewrite a file so that the longitude axis of one
  variable follows the "center" ([-180, 180]) or the "left" ([0, 360],
  Pacific centered) convention, reordering the data along that axis.

The building blocks are exposed as well: find_prime_meridian classifies an
axis, remap_longitudes computes the new axis and its permutation,
plan_chunks splits a large variable into slabs along a secondary dimension,
and reorder_axis applies the permutation to a block of data.

Variables larger than the memory limit are processed slab by slab. The
result is written under a temporary name and moved into place only once
every slab has been written.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Sequence

import netCDF4
import numpy as np

from nc_errors import (
    ConfigurationError,
    IOFailure,
    NcToolsError,
    PreconditionError,
    PrimeMeridianWarning,
)

logger = logging.getLogger(__name__)

DEFAULT_MEM_LIMIT_MB = 3072
# Size used for every cell when sizing slabs, whatever the on-disk type.
CELL_BYTES = 8
TEMP_SUFFIX = ".temp"


class PrimeMeridian(str, Enum):
    CENTER = "center"
    LEFT = "left"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ByIndex:
    index: int


@dataclass(frozen=True)
class ByName:
    name: str
    case_sensitive: bool = True


DimSelector = ByIndex | ByName


@dataclass(frozen=True)
class ChunkPlan:
    """
    Slabs to process along ``dim``.

    ``chunks`` holds ascending ``(start, count)`` pairs that cover
    ``shape[dim]`` exactly once. A plan with ``dim=None`` is a single pass
    over the whole variable.
    """

    dim: int | None
    chunks: tuple[tuple[int, int], ...] = ()

    @property
    def is_full(self) -> bool:
        return self.dim is None

    def __len__(self) -> int:
        return 1 if self.is_full else len(self.chunks)


def change_prime_meridian(
    filename: str | os.PathLike,
    output: str | os.PathLike | None = None,
    *,
    varid: str | None = None,
    margin: int | str | DimSelector = 0,
    prime_meridian: str | PrimeMeridian = "center",
    verbose: bool = False,
    overwrite: bool = False,
    compression: int | None = None,
    mem_limit: float = DEFAULT_MEM_LIMIT_MB,
    ignore_case: bool = False,
    on_progress: Callable[[int, int], None] | None = None,
) -> Path:
    """
    Change the prime meridian of a variable in a NetCDF file.

    Parameters
    ----------
    filename
        Source NetCDF file. It is only ever opened for reading.
    output
        Destination file. Required unless ``overwrite=True``, in which case
        the source file itself is replaced.
    varid
        Variable to reproject (default: the first non-coordinate variable).
    margin
        Longitude dimension of the variable, as a 0-based position or a
        dimension name (default: the first dimension).
    prime_meridian
        "center" for [-180, 180] longitudes, "left" for [0, 360].
    verbose
        If True, log the classification, the plan and each slab at INFO.
    overwrite
        Allow replacing an existing output file.
    compression
        zlib level between 1 and 9 for the reprojected variable. By default
        the filters of the source variable are kept.
    mem_limit
        Memory in MB a single pass may use (default 3072). Larger variables
        are processed iteratively along a secondary dimension.
    ignore_case
        Match ``varid`` and a named ``margin`` case-insensitively.
    on_progress
        Called as ``on_progress(done, total)`` after each slab is written.

    Returns
    -------
    Path
        The output path.

    Notes
    -----
    When the longitudes already follow ``prime_meridian``, or cannot be
    classified, a PrimeMeridianWarning is emitted and the source is copied
    to ``output`` unchanged.
    """
    source = Path(filename)
    target = _as_prime_meridian(prime_meridian)

    if output is None:
        if not overwrite:
            raise ConfigurationError(
                "output file is missing. Set overwrite=True to make changes "
                "in the original file."
            )
        output = source
    output = Path(output)

    if output.exists() and not overwrite:
        raise PreconditionError(
            f"output file {str(output)!r} already exists. Set overwrite=True."
        )
    if not source.is_file():
        raise PreconditionError(f"input file {str(source)!r} does not exist.")
    if compression is not None and not 1 <= compression <= 9:
        raise ConfigurationError(
            f"compression={compression!r} must be an integer between 1 and 9."
        )
    if mem_limit <= 0:
        raise ConfigurationError(f"mem_limit={mem_limit!r} must be positive.")
    selector = as_dim_selector(margin, ignore_case=ignore_case)

    log = logger.info if verbose else logger.debug
    tmp = output.with_name(output.name + TEMP_SUFFIX)

    with _open_source(source) as src:
        name = _resolve_varid(src, varid, ignore_case=ignore_case)
        var = src.variables[name]
        if var.ndim < 2:
            raise ConfigurationError(
                f"Variable {name!r} must have at least two dimensions, "
                f"got {var.dimensions}."
            )
        axis = resolve_dimension(var.dimensions, selector)
        lon_dim = var.dimensions[axis]
        if lon_dim not in src.variables:
            raise ConfigurationError(
                f"Dimension {lon_dim!r} has no coordinate variable holding "
                "longitude values."
            )

        with _io_guard("reading", source):
            lon = np.asarray(src.variables[lon_dim][:])
        current = find_prime_meridian(lon)
        log(
            "Variable %r: longitude dimension %r follows the %s convention.",
            name,
            lon_dim,
            current.value,
        )

        nothing_to_do = current in (target, PrimeMeridian.UNKNOWN)
        if not nothing_to_do:
            new_lon, permutation = remap_longitudes(lon, target)
            plan = plan_chunks(
                var.shape, axis, mem_limit * 2**20, itemsize=CELL_BYTES
            )
            log("Writing %s to temporary file %s.", name, tmp)
            try:
                _write_reprojected(
                    src,
                    var,
                    tmp,
                    axis=axis,
                    new_lon=new_lon,
                    permutation=permutation,
                    plan=plan,
                    compression=compression,
                    log=log,
                    on_progress=on_progress,
                )
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise

    if nothing_to_do:
        warnings.warn(
            "Longitude values are correct, nothing to do.",
            PrimeMeridianWarning,
            stacklevel=2,
        )
        if output.resolve() != source.resolve():
            with _io_guard("copying", source):
                shutil.copyfile(source, output)
        return output

    try:
        with _io_guard("renaming", tmp):
            os.replace(tmp, output)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    log("Variable %r now follows the %s convention: %s", name, target.value, output)
    return output


def find_prime_meridian(lon: Sequence[float] | np.ndarray) -> PrimeMeridian:
    """
    Classify a longitude axis as CENTER, LEFT or UNKNOWN.

    Only the range of the values matters; the axis does not need to be
    sorted. An axis that fits both conventions (for example [0, 180]) or
    neither of them is UNKNOWN.
    """
    values = np.asarray(lon, dtype=float)
    if values.size == 0:
        raise ValueError("Longitude axis is empty.")

    lo = float(np.nanmin(values))
    hi = float(np.nanmax(values))
    fits_left = lo >= 0.0 and hi <= 360.0
    fits_center = lo >= -180.0 and hi <= 180.0

    if fits_left and not fits_center:
        return PrimeMeridian.LEFT
    if fits_center and not fits_left:
        return PrimeMeridian.CENTER
    return PrimeMeridian.UNKNOWN


def remap_longitudes(
    lon: Sequence[float] | np.ndarray, prime_meridian: str | PrimeMeridian
) -> tuple[np.ndarray, np.ndarray]:
    """
    Wrap longitudes to ``prime_meridian`` and sort them.

    Returns
    -------
    new_lon, permutation
        ``new_lon`` is non-decreasing and equals the wrapped axis indexed by
        ``permutation``; ``permutation[k]`` is the original position of the
        value now at position ``k``. Ties keep their original order.
    """
    target = _as_prime_meridian(prime_meridian)
    values = np.asarray(lon)
    if values.ndim != 1:
        raise ValueError(
            f"Longitudes must be one-dimensional, got shape {values.shape}."
        )

    if target is PrimeMeridian.LEFT:
        wrapped = np.where(values < 0, values + 360, values)
    else:
        wrapped = np.where(values >= 180, values - 360, values)

    permutation = np.argsort(wrapped, kind="stable")
    return wrapped[permutation], permutation


def plan_chunks(
    shape: Sequence[int],
    margin: int,
    mem_limit: float,
    *,
    itemsize: int = CELL_BYTES,
) -> ChunkPlan:
    """
    Decide how to split a variable of ``shape`` so each pass fits ``mem_limit``.

    ``mem_limit`` is in bytes. The split dimension is never ``margin``: it is
    the smallest dimension with at least as many cells as pieces needed, or
    the largest dimension when none is long enough.

    Slabs are ``ceil(extent / pieces)`` long, so a single slab can be larger
    than ``mem_limit``: rounding up may yield fewer, larger slabs, and a
    one-index slab of a dimension shorter than the piece count still holds
    ``total / extent`` bytes.
    """
    shape = tuple(int(n) for n in shape)
    ndim = len(shape)
    if ndim == 0:
        raise ConfigurationError("Cannot plan chunks for a scalar variable.")
    if not -ndim <= margin < ndim:
        raise ConfigurationError(
            f"margin={margin!r} is out of range for {ndim} dimensions."
        )
    margin %= ndim
    if mem_limit <= 0:
        raise ConfigurationError(f"mem_limit={mem_limit!r} must be positive.")

    total = math.prod(shape) * itemsize
    if total <= mem_limit:
        return ChunkPlan(dim=None)

    npiece = math.ceil(total / mem_limit)
    candidates = [d for d, n in enumerate(shape) if d != margin and n > 1]
    if not candidates:
        raise ConfigurationError(
            f"Variable of shape {shape} does not fit in {mem_limit:.0f} bytes "
            f"and has no dimension other than margin={margin} to split along."
        )

    long_enough = [d for d in candidates if shape[d] >= npiece]
    if long_enough:
        dim = min(long_enough, key=lambda d: shape[d])
    else:
        dim = max(candidates, key=lambda d: shape[d])

    extent = shape[dim]
    step = max(math.ceil(extent / npiece), 1)
    chunks = tuple(
        (start, min(step, extent - start)) for start in range(0, extent, step)
    )
    return ChunkPlan(dim=dim, chunks=chunks)


def reorder_axis(
    block: np.ndarray, axis: int, permutation: Sequence[int] | np.ndarray
) -> np.ndarray:
    """Return a copy of ``block`` with ``axis`` reordered by ``permutation``."""
    block = np.asarray(block)
    permutation = np.asarray(permutation, dtype=np.intp)
    if block.ndim == 0:
        raise ValueError("Cannot reorder a scalar.")
    if not -block.ndim <= axis < block.ndim:
        raise ValueError(f"axis={axis!r} is out of range for {block.ndim} dimensions.")
    if block.shape[axis] != permutation.size:
        raise ValueError(
            f"Permutation of length {permutation.size} does not match "
            f"extent {block.shape[axis]} of axis {axis}."
        )
    return np.take(block, permutation, axis=axis)


def as_dim_selector(
    margin: int | str | DimSelector, *, ignore_case: bool = False
) -> DimSelector:
    if isinstance(margin, (ByIndex, ByName)):
        return margin
    if isinstance(margin, (int, np.integer)) and not isinstance(margin, bool):
        return ByIndex(int(margin))
    if isinstance(margin, str):
        return ByName(margin, case_sensitive=not ignore_case)
    raise ConfigurationError(
        f"margin must be a single dimension position or name, got {margin!r}."
    )


def resolve_dimension(dim_names: Sequence[str], selector: DimSelector) -> int:
    """Resolve ``selector`` to a position in ``dim_names``."""
    dim_names = list(dim_names)
    if isinstance(selector, ByIndex):
        ndim = len(dim_names)
        if not -ndim <= selector.index < ndim:
            raise ConfigurationError(
                f"margin={selector.index} is out of range. "
                f"Available dims: {dim_names}"
            )
        return selector.index % ndim

    if selector.case_sensitive:
        matches = [i for i, dim in enumerate(dim_names) if dim == selector.name]
    else:
        wanted = selector.name.lower()
        matches = [i for i, dim in enumerate(dim_names) if dim.lower() == wanted]

    if not matches:
        raise ConfigurationError(
            f"margin={selector.name!r} is not the name of a dimension. "
            f"Available dims: {dim_names}"
        )
    if len(matches) > 1:
        raise ConfigurationError(
            f"margin={selector.name!r} matches several dimensions: "
            f"{[dim_names[i] for i in matches]}"
        )
    return matches[0]


def _as_prime_meridian(value: str | PrimeMeridian) -> PrimeMeridian:
    try:
        pm = PrimeMeridian(value.lower() if isinstance(value, str) else value)
    except ValueError:
        pm = None
    if pm is None or pm is PrimeMeridian.UNKNOWN:
        raise ConfigurationError(
            f"Unknown prime_meridian={value!r}. Expected 'center' or 'left'."
        )
    return pm


def _resolve_varid(
    nc: netCDF4.Dataset, varid: str | None, *, ignore_case: bool
) -> str:
    names = list(nc.variables)
    if varid is None:
        data_vars = [name for name in names if name not in nc.dimensions]
        if not data_vars:
            raise ConfigurationError(
                f"File has no data variables. Available: {names}"
            )
        return data_vars[0]

    if varid in nc.variables:
        return varid
    if ignore_case:
        matches = [name for name in names if name.lower() == varid.lower()]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ConfigurationError(
                f"varid={varid!r} matches several variables: {matches}"
            )
    raise ConfigurationError(
        f"File missing varid={varid!r}. Available: {names}"
    )


@contextmanager
def _io_guard(action: str, path: str | os.PathLike) -> Iterator[None]:
    try:
        yield
    except NcToolsError:
        raise
    except (OSError, RuntimeError) as exc:
        raise IOFailure(f"{action} {str(path)!r} failed: {exc}") from exc


@contextmanager
def _open_source(path: Path) -> Iterator[netCDF4.Dataset]:
    with _io_guard("opening", path):
        nc = netCDF4.Dataset(path, mode="r")
    try:
        # Raw values: fill values and packing are copied as stored.
        nc.set_auto_maskandscale(False)
        yield nc
    finally:
        nc.close()


def _ncattrs(obj) -> dict:
    return {key: obj.getncattr(key) for key in obj.ncattrs() if key != "_FillValue"}


def _fill_value(var: netCDF4.Variable):
    if "_FillValue" in var.ncattrs():
        return var.getncattr("_FillValue")
    return None


def _define_destination(
    src: netCDF4.Dataset,
    var: netCDF4.Variable,
    dst: netCDF4.Dataset,
    *,
    axis: int,
    new_lon: np.ndarray,
    compression: int | None,
) -> netCDF4.Variable:
    dst.setncatts(_ncattrs(src))

    for dim in var.dimensions:
        src_dim = src.dimensions[dim]
        dst.createDimension(dim, None if src_dim.isunlimited() else len(src_dim))

    for i, dim in enumerate(var.dimensions):
        coord = src.variables.get(dim)
        if coord is None or coord.dimensions != (dim,):
            continue
        out = dst.createVariable(
            dim, coord.dtype, (dim,), fill_value=_fill_value(coord)
        )
        out.set_auto_maskandscale(False)
        out.setncatts(_ncattrs(coord))
        values = new_lon if i == axis else coord[:]
        out[0 : len(values)] = np.asarray(values, dtype=coord.dtype)

    filters = var.filters() or {}
    if compression is not None:
        zlib, complevel = True, compression
    else:
        zlib, complevel = bool(filters.get("zlib", False)), filters.get("complevel", 4)

    # No chunksizes: the library picks the layout of the new variable.
    out_var = dst.createVariable(
        var.name,
        var.dtype,
        var.dimensions,
        zlib=zlib,
        complevel=complevel or 4,
        shuffle=bool(filters.get("shuffle", True)),
        fill_value=_fill_value(var),
    )
    # Stored values are written as read; packing attributes are only copied.
    out_var.set_auto_maskandscale(False)
    out_var.setncatts(_ncattrs(var))
    return out_var


def _write_reprojected(
    src: netCDF4.Dataset,
    var: netCDF4.Variable,
    tmp: Path,
    *,
    axis: int,
    new_lon: np.ndarray,
    permutation: np.ndarray,
    plan: ChunkPlan,
    compression: int | None,
    log: Callable[..., None],
    on_progress: Callable[[int, int], None] | None,
) -> None:
    with _io_guard("creating", tmp):
        dst = netCDF4.Dataset(tmp, mode="w", format="NETCDF4")
    with dst:
        with _io_guard("defining variables in", tmp):
            out_var = _define_destination(
                src, var, dst, axis=axis, new_lon=new_lon, compression=compression
            )

        # Explicit bounds so unlimited dimensions grow to the source length.
        index = [slice(0, n) for n in var.shape]

        if plan.is_full:
            key = tuple(index)
            with _io_guard("reading", src.filepath()):
                block = var[key]
            reordered = reorder_axis(block, axis, permutation)
            with _io_guard("writing", tmp):
                out_var[key] = reordered
            if on_progress is not None:
                on_progress(1, 1)
            return

        total = len(plan)
        logger.info(
            "Using big data method: %d slabs along dimension %r.",
            total,
            var.dimensions[plan.dim],
        )
        for i, (start, count) in enumerate(plan.chunks, start=1):
            index[plan.dim] = slice(start, start + count)
            key = tuple(index)
            with _io_guard("reading", src.filepath()):
                block = var[key]
            reordered = reorder_axis(block, axis, permutation)
            del block
            with _io_guard("writing", tmp):
                out_var[key] = reordered
                dst.sync()
            del reordered
            log(
                "Slab %d/%d written (%s %d:%d).",
                i,
                total,
                var.dimensions[plan.dim],
                start,
                start + count,
            )
            if on_progress is not None:
                on_progress(i, total)
