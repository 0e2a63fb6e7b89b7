"""Tests for the file-backed artifact store"""

import pytest

from shielded_transfer.artifact_store import FileArtifactStore


@pytest.mark.asyncio
async def test_put_get_exists_remove(tmp_path):
    store = FileArtifactStore(tmp_path / "artifacts")
    key = "V2/01x02/zkey.br"

    assert not await store.exists(key)
    assert await store.get(key) is None

    await store.put(key, b"\x00circuit")

    assert await store.exists(key)
    assert await store.get(key) == b"\x00circuit"
    assert (tmp_path / "artifacts" / "V2" / "01x02" / "zkey.br").is_file()

    await store.remove(key)
    await store.remove(key)
    assert not await store.exists(key)


@pytest.mark.asyncio
async def test_keys_cannot_escape_root(tmp_path):
    store = FileArtifactStore(tmp_path / "artifacts")

    with pytest.raises(ValueError):
        await store.put("../outside.bin", b"x")
    assert not (tmp_path / "outside.bin").exists()
