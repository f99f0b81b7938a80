import pytest

import path_mapper
from path_mapper import PathMappingConfig


def _mapping(remote="/downloads", local="/mnt/media/downloads", enabled=True):
    return PathMappingConfig(enabled=enabled, remote_path=remote, local_path=local)


def test_transform_rewrites_prefix():
    assert path_mapper.transform("/downloads/Dune", _mapping()) == "/mnt/media/downloads/Dune"


def test_transform_exact_prefix_maps_to_local_root():
    assert path_mapper.transform("/downloads/", _mapping()) == "/mnt/media/downloads"


def test_transform_requires_segment_boundary():
    assert path_mapper.transform("/downloads-old/Dune", _mapping()) == "/downloads-old/Dune"


def test_transform_disabled_or_unrelated_path_is_unchanged():
    assert path_mapper.transform("/downloads/Dune", _mapping(enabled=False)) == "/downloads/Dune"
    assert path_mapper.transform("/data/Dune", _mapping()) == "/data/Dune"
    assert path_mapper.transform("", _mapping()) == ""


def test_transform_normalizes_windows_separators_and_trailing_slashes():
    mapping = _mapping(remote="D:\\torrents\\", local="/srv/torrents/")
    assert path_mapper.transform("D:\\torrents\\Book\\file.m4b", mapping) == "/srv/torrents/Book/file.m4b"


def test_from_config_reads_truthy_flag():
    mapping = path_mapper.from_config({
        "download_client_remote_path_mapping_enabled": "true",
        "download_client_remote_path": "/remote",
        "download_client_local_path": "/local",
    })
    assert mapping == PathMappingConfig(True, "/remote", "/local")
    assert path_mapper.from_config({}).enabled is False


def test_validate_requires_both_paths_when_enabled():
    path_mapper.validate(_mapping(enabled=False, remote="", local=""))
    with pytest.raises(ValueError, match="Remote path and local path are required"):
        path_mapper.validate(_mapping(local=""))
