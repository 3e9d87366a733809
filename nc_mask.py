"""
Grid mask extraction from a NetCDF file.

nc_mask reads the first 2-D slab of the first data variable and marks every
cell holding a value with 1 and every missing cell with 0. The mask is
returned as an xarray DataArray or written to a new NetCDF file.
"""

from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import xarray as xr

from nc_errors import ConfigurationError, IOFailure, PreconditionError

MASK_NAME = "mask"
MASK_FILL_VALUE = -9999


def nc_mask(
    filename: str | os.PathLike, output: str | os.PathLike | None = None
) -> xr.DataArray | Path:
    """
    Extract the valid-data mask of a NetCDF file.

    Parameters
    ----------
    filename
        NetCDF file whose data variables all share the same dimensions.
    output
        File to write the mask to. If None, the mask is returned instead.

    Returns
    -------
    DataArray or Path
        Without ``output``: an int32 DataArray named "mask" over the first
        two dimensions of the first variable, with their coordinate values.
        With ``output``: the path of the written file.
    """
    source = Path(filename)
    if not source.is_file():
        raise PreconditionError(f"input file {str(source)!r} does not exist.")

    try:
        ds = xr.open_dataset(source)
    except (OSError, RuntimeError, ValueError) as exc:
        raise IOFailure(f"opening {str(source)!r} failed: {exc}") from exc

    with ds:
        mask = _extract_mask(ds)

    if output is None:
        return mask

    output = Path(output)
    try:
        mask.to_netcdf(
            output,
            encoding={
                MASK_NAME: {"dtype": "int32", "_FillValue": MASK_FILL_VALUE}
            },
        )
    except (OSError, RuntimeError) as exc:
        raise IOFailure(f"writing {str(output)!r} failed: {exc}") from exc
    return output


def _extract_mask(ds: xr.Dataset) -> xr.DataArray:
    names = list(ds.data_vars)
    if not names:
        raise PreconditionError(
            f"File has no data variables. Available: {list(ds.variables)}"
        )

    grids = {name: _var_grid(ds[name]) for name in names}
    if len(set(grids.values())) > 1:
        raise PreconditionError(
            f"Variables dimension don't match, cannot extract the grid: {grids}"
        )

    first = ds[names[0]]
    if first.ndim < 2:
        raise ConfigurationError(
            f"Variable {names[0]!r} must have at least two dimensions, "
            f"got {first.dims}."
        )

    dim_a, dim_b = first.dims[:2]
    plane = first.isel({dim: 0 for dim in first.dims[2:]}, drop=True)
    valid = plane.notnull().values.astype(np.int32)

    coords = {dim: ds[dim].values for dim in (dim_a, dim_b) if dim in ds.coords}
    return xr.DataArray(
        valid,
        dims=(dim_a, dim_b),
        coords=coords,
        name=MASK_NAME,
        attrs={"units": "0/1", "long_name": "grid mask"},
    )


def _var_grid(da: xr.DataArray) -> tuple[tuple[str, int], ...]:
    return tuple((dim, da.sizes[dim]) for dim in da.dims)
