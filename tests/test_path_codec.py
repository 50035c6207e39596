import pytest

from orgtree.core.exceptions import InvalidPathError
from orgtree.services import path_codec


def test_encode_and_decode():
    assert path_codec.encode([1, 4, 9]) == "/1/4/9"
    assert path_codec.decode("/1/4/9") == [1, 4, 9]
    assert path_codec.encode([7]) == "/7"


@pytest.mark.parametrize("ids", [[], [0], [-3], [1, "2"], [True]])
def test_encode_rejects_bad_ids(ids):
    with pytest.raises(InvalidPathError):
        path_codec.encode(ids)


@pytest.mark.parametrize("path", ["", "1/2", "/", "/1//2", "/1/2/", "/1/x", "/1/0", None])
def test_decode_rejects_malformed_paths(path):
    with pytest.raises(InvalidPathError) as exc:
        path_codec.decode(path)
    assert exc.value.error_code == "INVALID_PATH"


def test_prefix_respects_segment_boundaries():
    assert path_codec.is_prefix_of("/1/2", "/1/2/3")
    assert not path_codec.is_prefix_of("/1/2", "/1/20")
    assert not path_codec.is_prefix_of("/1/2", "/1/2")
    assert not path_codec.is_prefix_of("/1/2/3", "/1/2")


def test_child_path_depth_and_parent_path():
    assert path_codec.child_path(None, 5) == "/5"
    assert path_codec.child_path("/1/2", 5) == "/1/2/5"
    assert path_codec.depth("/5") == 0
    assert path_codec.depth("/1/2/5") == 2
    assert path_codec.parent_path("/1/2/5") == "/1/2"
    assert path_codec.parent_path("/5") is None


def test_rebase_keeps_suffix():
    assert path_codec.rebase("/1/2/3", "/1/2", "/4/2") == "/4/2/3"
    assert path_codec.rebase("/1/2", "/1/2", "/2") == "/2"
    with pytest.raises(InvalidPathError):
        path_codec.rebase("/1/20/3", "/1/2", "/4/2")


def test_has_cycle():
    assert path_codec.has_cycle("/1/2/1")
    assert not path_codec.has_cycle("/1/2/3")
