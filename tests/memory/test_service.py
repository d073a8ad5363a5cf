from pathlib import Path

import pytest

from vidiary.config import StoreSettings
from vidiary.memory.errors import AssetIOFailure, MetadataVerificationFailure, ReferentialViolation, StoreError
from vidiary.memory.metadata import sidecar_path
from vidiary.memory.models import BuiltinType, TrimWindow
from vidiary.memory.service import MemoryService


def _stored_files(settings):
    return [p for d in (settings.videos_path, settings.thumbnails_path) for p in d.iterdir()]


async def test_travel_memory_lifecycle(service, make_file):
    video = await service.create_memory(
        make_file(".mp4", size=64),
        make_file(".jpg", size=8),
        start_time=5.0,
        end_time=20.0,
        title="Lisbon",
        description="tram 28",
        category_id="travel",
    )

    assert video.duration == 15.0
    assert Path(video.uri).exists()
    assert Path(video.thumbnail).exists()
    assert await service.get_trim_window(video.id) == TrimWindow(5.0, 20.0)

    travel = await service.list_memories("travel")
    assert [m.id for m in travel] == [video.id]
    assert await service.list_memories("family") == []

    await service.set_core_memory(video.id, note="sunset", color="#ffaa00", type_id="travel")
    memory = await service.get_memory(video.id)
    assert memory.core_memory.note == "sunset"
    assert isinstance(await service.resolve_memory_type("travel"), BuiltinType)
    assert memory.to_dict()["duration"] == 15.0


async def test_create_rejects_invalid_windows(service, make_file, settings):
    src, thumb = make_file(), make_file(".jpg")
    with pytest.raises(ValueError):
        await service.create_memory(src, thumb, 10.0, 10.0, "t")
    with pytest.raises(ValueError):
        await service.create_memory(src, thumb, -1.0, 5.0, "t")
    with pytest.raises(ValueError):
        await service.create_memory(src, thumb, 0.0, 61.0, "t")
    assert _stored_files(settings) == []


async def test_metadata_failure_leaves_no_files(service, make_file, settings, monkeypatch):
    async def broken(record):
        raise OSError("disk full")

    monkeypatch.setattr(service.metadata, "_write_indexed", broken)
    with pytest.raises(MetadataVerificationFailure):
        await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t")

    assert _stored_files(settings) == []
    assert await service.get_videos() == []


async def test_row_failure_removes_files_and_metadata(service, make_file, settings, monkeypatch):
    async def failing_add(video):
        raise StoreError("boom", operation="add_video", entity_id=video.id)

    monkeypatch.setattr(service.store, "add_video", failing_add)
    with pytest.raises(StoreError):
        await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t", video_id="v1")

    assert _stored_files(settings) == []
    assert not service.metadata.indexed_path("v1").exists()


async def test_missing_source_raises_asset_failure(service, make_file, tmp_path, settings):
    with pytest.raises(AssetIOFailure):
        await service.create_memory(make_file(), tmp_path / "nope.jpg", 0.0, 5.0, "t")
    assert _stored_files(settings) == []


async def test_duplicate_id_keeps_both_trim_windows(service, make_file):
    first = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "a", video_id="v1")
    second = await service.create_memory(make_file(), make_file(".jpg"), 2.0, 9.0, "b", video_id="v1")

    assert first.id == "v1"
    assert second.id != "v1"
    service.metadata.clear_cache()
    assert await service.get_trim_window("v1") == TrimWindow(0.0, 5.0)
    assert await service.get_trim_window(second.id) == TrimWindow(2.0, 9.0)


async def test_update_memory_rewrites_window(service, make_file):
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 10.0, "t")

    assert await service.update_memory(video.id, end_time=4.0, title="shorter")
    updated = (await service.get_memory(video.id)).video
    assert (updated.start_time, updated.end_time, updated.duration) == (0.0, 4.0, 4.0)
    assert updated.title == "shorter"
    service.metadata.clear_cache()
    assert await service.get_trim_window(video.id) == TrimWindow(0.0, 4.0)

    with pytest.raises(ValueError):
        await service.update_memory(video.id, start_time=8.0)
    with pytest.raises(ValueError):
        await service.update_memory(video.id, duration=3.0)
    assert await service.update_memory("missing", end_time=2.0) is False


async def test_delete_memory_removes_row_files_and_metadata(service, make_file):
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t")
    await service.set_core_memory(video.id, note="n", color="#000", type_id="happy")

    assert await service.delete_memory(video.id)

    assert await service.get_memory(video.id) is None
    assert await service.get_core_memories() == []
    assert not Path(video.uri).exists()
    assert not Path(video.thumbnail).exists()
    assert not sidecar_path(video.uri).exists()
    assert not service.metadata.indexed_path(video.id).exists()
    assert await service.delete_memory(video.id) is False


async def test_create_enforces_cache_budget(tmp_path, retry, make_file):
    settings = StoreSettings(data_dir=str(tmp_path / "data"), max_cache_bytes=200, log_file=None)
    service = await MemoryService.open(settings, retry=retry)
    try:
        first = await service.create_memory(make_file(size=80), make_file(".jpg", size=10), 0.0, 5.0, "a")
        second = await service.create_memory(make_file(size=80), make_file(".jpg", size=10), 0.0, 5.0, "b")

        assert not Path(first.uri).exists()
        assert Path(second.uri).exists()
        assert Path(second.thumbnail).exists()
        assert service.cache_size() <= 200
    finally:
        await service.close()


async def test_cleanup_cache_on_demand(service, make_file):
    video = await service.create_memory(make_file(size=50), make_file(".jpg", size=50), 0.0, 5.0, "t")
    evicted = await service.cleanup_cache(max_bytes=0)
    assert video.uri in evicted
    assert service.cache_size() == 0


async def test_category_passthroughs(service, make_file):
    category = await service.add_category("Road Trips", icon="car", color="#123456")
    assert category.key == "road_trips"
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t", category_id=category.id)

    assert await service.delete_category(category.id)
    assert (await service.get_memory(video.id)).video.category_id == "all"


async def test_clear_all(service, make_file, settings):
    await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t")
    await service.add_custom_memory_type("Pets", icon="paw", color="#abc")

    await service.clear_all()

    assert await service.list_memories() == []
    assert await service.get_custom_memory_types() == []
    assert {c.id for c in await service.get_categories()} >= {"all", "travel"}
    assert service.cache_size() == 0
    assert list(settings.metadata_path.glob("*.json")) == []

    stats = await service.stats()
    assert stats["videos"] == 0
    assert stats["schema_version"] >= 4


async def test_deleting_travel_moves_memory_to_all(service, make_file):
    video = await service.create_memory(make_file(), make_file(".jpg"), 2.0, 7.0, "A", category_id="travel")
    assert [v.id for v in await service.get_videos("travel")] == [video.id]
    assert await service.get_videos("family") == []

    assert await service.delete_category("travel")

    assert await service.get_videos("travel") == []
    moved = await service.get_videos("all")
    assert [v.id for v in moved] == [video.id]
    assert moved[0].category_id == "all"
    assert await service.get_trim_window(video.id) == TrimWindow(2.0, 7.0)


async def test_unknown_category_is_reported_as_stored(service, make_file):
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t", category_id="nope")

    stored = await service.store.get_video(video.id)
    assert video.category_id == "all"
    assert stored.category_id == video.category_id


async def test_failed_row_update_keeps_previous_window(service, make_file):
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 10.0, "t")

    with pytest.raises(ReferentialViolation):
        await service.update_memory(video.id, end_time=4.0, category_id="ghost")

    service.metadata.clear_cache()
    assert await service.get_trim_window(video.id) == TrimWindow(0.0, 10.0)
    stored = await service.store.get_video(video.id)
    assert (stored.end_time, stored.duration, stored.category_id) == (10.0, 10.0, "all")


async def test_failed_metadata_update_restores_row(service, make_file, monkeypatch):
    video = await service.create_memory(make_file(), make_file(".jpg"), 0.0, 10.0, "t")

    async def broken(record):
        raise OSError("disk full")

    monkeypatch.setattr(service.metadata, "_write_indexed", broken)
    with pytest.raises(MetadataVerificationFailure):
        await service.update_memory(video.id, start_time=2.0, title="renamed")
    monkeypatch.undo()

    stored = await service.store.get_video(video.id)
    assert (stored.start_time, stored.end_time, stored.duration) == (0.0, 10.0, 10.0)
    service.metadata.clear_cache()
    assert await service.get_trim_window(video.id) == TrimWindow(0.0, 10.0)


async def test_rekey_failure_still_returns_stored_memory(service, make_file, monkeypatch):
    await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "a", video_id="v1")

    async def not_found(video_id):
        return False

    async def broken_rekey(asset_ref, old_id, new_id):
        raise MetadataVerificationFailure("rekey failed", operation="rekey_metadata", entity_id=old_id)

    # Another writer took "v1" between the existence check and the insert.
    monkeypatch.setattr(service.store, "video_exists", not_found)
    monkeypatch.setattr(service.metadata, "rekey", broken_rekey)
    second = await service.create_memory(make_file(), make_file(".jpg"), 2.0, 9.0, "b", video_id="v1")

    assert second.id != "v1"
    assert await service.store.get_video(second.id) is not None
    service.metadata.clear_cache()
    assert await service.get_trim_window(second.id) == TrimWindow(2.0, 9.0)


async def test_create_rejects_unsafe_video_id(service, make_file, settings):
    with pytest.raises(ValueError):
        await service.create_memory(make_file(), make_file(".jpg"), 0.0, 5.0, "t", video_id="a/b")
    assert _stored_files(settings) == []
