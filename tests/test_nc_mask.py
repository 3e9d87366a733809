"""Tests for grid mask extraction."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import xarray as xr

from nc_errors import PreconditionError
from nc_mask import MASK_FILL_VALUE, nc_mask


def _make_mask_source(path: Path, *, extra_var: xr.DataArray | None = None) -> None:
    """Write a (lat, lon, time) variable whose first time step is [[1, NA], [NA, 2]]."""
    data = np.full((2, 2, 3), 5.0)
    data[:, :, 0] = [[1.0, np.nan], [np.nan, 2.0]]
    ds = xr.Dataset(
        {"pr": (("lat", "lon", "time"), data)},
        coords={"lat": [-10.0, 10.0], "lon": [100.0, 120.0], "time": [0, 1, 2]},
    )
    if extra_var is not None:
        ds["other"] = extra_var
    ds.to_netcdf(path)


def test_mask_returned_in_memory(tmp_path) -> None:
    src = tmp_path / "pr.nc"
    _make_mask_source(src)

    mask = nc_mask(src)

    assert isinstance(mask, xr.DataArray)
    assert mask.dims == ("lat", "lon")
    assert mask.dtype == np.int32
    np.testing.assert_array_equal(mask.values, [[1, 0], [0, 1]])
    np.testing.assert_array_equal(mask["lat"].values, [-10.0, 10.0])
    np.testing.assert_array_equal(mask["lon"].values, [100.0, 120.0])


def test_mask_written_to_file(tmp_path) -> None:
    src = tmp_path / "pr.nc"
    _make_mask_source(src)
    out = tmp_path / "mask.nc"

    result = nc_mask(src, out)

    assert result == out
    with xr.open_dataset(out) as ds:
        assert ds["mask"].attrs["units"] == "0/1"
        assert ds["mask"].attrs["long_name"] == "grid mask"
        assert ds["mask"].encoding["_FillValue"] == MASK_FILL_VALUE
        np.testing.assert_array_equal(ds["mask"].values, [[1, 0], [0, 1]])


def test_mismatched_variable_grids_are_rejected(tmp_path) -> None:
    src = tmp_path / "pr.nc"
    _make_mask_source(
        src, extra_var=xr.DataArray(np.zeros((2, 2)), dims=("lat", "lon"))
    )

    with pytest.raises(PreconditionError):
        nc_mask(src)


def test_missing_file_is_rejected(tmp_path) -> None:
    with pytest.raises(PreconditionError):
        nc_mask(tmp_path / "nope.nc")
