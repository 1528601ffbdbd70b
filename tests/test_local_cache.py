import pytest

from local_cache import CLASSES_KEY, LocalCache, LocalStorage, QuotaExceededError, merge_entities


def make_cache(tmp_path, quota=1024 * 1024):
    return LocalCache(LocalStorage(tmp_path / "storage.json", quota))


def entity(entity_id, created_at, **extra):
    return {"id": entity_id, "createdAt": created_at, **extra}


def test_merge_prefers_server_copy_and_keeps_local_only():
    x = {"id": "X", "title": "local x"}
    y_local = {"id": "Y", "title": "local y"}
    y_server = {"id": "Y", "title": "server y"}
    z = {"id": "Z", "title": "server z"}

    merged = merge_entities([x, y_local], [y_server, z])

    assert merged == [x, y_server, z]


def test_merge_with_empty_sides():
    items = [{"id": "A"}]

    assert merge_entities([], items) == items
    assert merge_entities(items, []) == items
    assert merge_entities([], []) == []


def test_storage_persists_across_instances(tmp_path):
    make_cache(tmp_path).save_classes([entity("class:a", "2026-01-01")])

    assert make_cache(tmp_path).load_classes() == [entity("class:a", "2026-01-01")]


def test_corrupt_storage_file_starts_empty(tmp_path):
    (tmp_path / "storage.json").write_text("{not json", encoding="utf-8")

    cache = make_cache(tmp_path)

    assert cache.load_classes() == []
    assert cache.save_classes([entity("class:a", "2026-01-01")]) is not None


def test_corrupt_entry_is_ignored(tmp_path):
    storage = LocalStorage(tmp_path / "storage.json", 1024)
    storage.set_item(CLASSES_KEY, "[{broken")

    assert LocalCache(storage).load_classes() == []


def test_storage_rejects_writes_over_quota(tmp_path):
    storage = LocalStorage(tmp_path / "storage.json", 20)

    with pytest.raises(QuotaExceededError):
        storage.set_item("k", "v" * 50)

    assert storage.get_item("k") is None
    assert storage.usage() == 0


def test_photos_are_stripped_from_the_oldest_entry_first(tmp_path):
    photo = "x" * 400
    classes = [
        entity("class:b", "2026-01-02", photos=[photo]),
        entity("class:a", "2026-01-01", photos=[photo]),
        entity("class:c", "2026-01-03", photos=[photo]),
    ]
    cache = make_cache(tmp_path, quota=1100)

    saved = cache.save_classes(classes)

    by_id = {c["id"]: c for c in saved}
    assert by_id["class:a"]["photos"] == []
    assert by_id["class:b"]["photos"] == [photo]
    assert by_id["class:c"]["photos"] == [photo]
    assert [c["id"] for c in saved] == ["class:b", "class:a", "class:c"]
    assert cache.load_classes() == saved


def test_oldest_entries_are_dropped_when_stripping_photos_is_not_enough(tmp_path):
    classes = [
        entity("class:c", "2026-01-03", description="y" * 300),
        entity("class:a", "2026-01-01", description="y" * 300),
        entity("class:b", "2026-01-02", description="y" * 300),
    ]
    cache = make_cache(tmp_path, quota=800)

    saved = cache.save_classes(classes)

    assert [c["id"] for c in saved] == ["class:c", "class:b"]
    assert cache.load_classes() == saved


def test_save_gives_up_when_nothing_fits(tmp_path):
    cache = make_cache(tmp_path, quota=10)

    assert cache.save_classes([entity("class:a", "2026-01-01")]) is None
    assert cache.load_classes() == []


def test_upsert_and_remove_class(tmp_path):
    cache = make_cache(tmp_path)
    cache.save_classes([entity("class:a", "2026-01-01", title="old")])

    cache.upsert_class(entity("class:a", "2026-01-01", title="new"))
    cache.upsert_class(entity("class:b", "2026-01-02"))
    assert [(c["id"], c.get("title")) for c in cache.load_classes()] == [("class:a", "new"), ("class:b", None)]

    cache.remove_class("class:a")
    assert [c["id"] for c in cache.load_classes()] == ["class:b"]


def test_bookings_and_profile_round_trip(tmp_path):
    cache = make_cache(tmp_path)

    cache.upsert_booking({"id": "booking:1", "status": "pending"})
    cache.upsert_booking({"id": "booking:1", "status": "confirmed"})
    cache.save_profile({"id": "guest", "name": "Gary"})

    assert cache.load_bookings() == [{"id": "booking:1", "status": "confirmed"}]
    assert cache.load_profile() == {"id": "guest", "name": "Gary"}
