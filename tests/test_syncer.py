import json
import threading

import pytest
import requests

from catalog_store import CatalogStore, CatalogStoreError
from conftest import JPEG_BYTES, FakeResponse, game_row, make_csv
from sinks import ArchiveSink, DirectorySink
from syncer import CatalogSyncer, FailedAssetInfo

TENANT = "42"
CDN = "https://cdn.example.com"


@pytest.fixture
def tree(tmp_path):
    return DirectorySink(tmp_path / "mirror" / TENANT)


@pytest.fixture
def run_sync(store, tree, make_fetcher, clock):
    def runner(csv_data, *, sink=None, catalog=None, full_sync=False, **kwargs):
        syncer = CatalogSyncer(
            catalog or store,
            sink or tree,
            TENANT,
            make_fetcher(),
            full_sync=full_sync,
            local_hosts=["localhost", "127.0.0.1"],
            retry_passes=kwargs.pop("retry_passes", 2),
            retry_pass_delay=3.0,
            sleep=clock.sleep,
            **kwargs,
        )
        return syncer.run(csv_data)

    return runner


def doom_csv(logo=f"{CDN}/doom-logo.png", cover=f"{CDN}/doom-cover.jpg", **extra):
    return make_csv([game_row("Doom", logo=logo, cover=cover, **extra)])


def test_first_run_writes_tree_and_cache(store, tree, session, run_sync):
    doom = store.add_game(TENANT, "Doom")
    store.add_game(TENANT, "Hades")
    session.serve(f"{CDN}/doom-logo.png")
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)
    session.serve(f"{CDN}/hades", JPEG_BYTES)
    data = make_csv(
        [
            {"Type": "Platform", "Name": "PC", "IsActive": "true"},
            game_row("Doom", logo=f"{CDN}/doom-logo.png", cover=f"{CDN}/doom-cover.jpg"),
            game_row("Hades", cover=f"{CDN}/hades"),
        ]
    )

    stats = run_sync(data)

    assert stats.games_synced == 2
    assert stats.images_synced == 3
    # backup + five settings files + two info.json + three images
    assert stats.files_written == 11
    assert tree.list_names("Games/Doom") == ["cover.jpg", "info.json", "logo.png"]
    assert tree.list_names("Games/Hades") == ["cover.jpg", "info.json"]
    assert json.loads(tree.read_text("Settings/Platforms.json"))[0]["name"] == "PC"
    assert len(tree.list_names("Backups")) == 1

    entry = store.load_cache_entries(TENANT)[doom]
    assert entry.logo_downloaded and entry.cover_downloaded
    assert entry.cover_url == f"{CDN}/doom-cover.jpg"
    assert not any(game.modified_since_last_export for game in store.list_games(TENANT))


def test_second_run_without_changes_is_a_no_op(store, session, run_sync):
    store.add_game(TENANT, "Doom")
    session.serve(f"{CDN}/doom-logo.png")
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)
    run_sync(doom_csv())
    calls = len(session.calls)

    stats = run_sync(doom_csv())

    assert stats.games_synced == 0
    assert stats.games_skipped == 1
    assert stats.files_written == 0
    assert len(session.calls) == calls


def test_full_sync_reprocesses_every_game(store, session, run_sync):
    store.add_game(TENANT, "Doom")
    store.add_game(TENANT, "NoArt")
    session.serve(f"{CDN}/doom-logo.png")
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)
    data = make_csv(
        [
            game_row("Doom", logo=f"{CDN}/doom-logo.png", cover=f"{CDN}/doom-cover.jpg"),
            game_row("NoArt"),
        ]
    )
    run_sync(data)
    calls = len(session.calls)

    stats = run_sync(data, full_sync=True)

    assert stats.games_synced == 2
    assert stats.images_synced == 2
    assert len(session.calls) == calls + 2


def test_failed_logo_is_retried_on_next_run(store, tree, session, run_sync):
    doom = store.add_game(TENANT, "Doom")
    session.route(f"{CDN}/doom-logo.png", FakeResponse(404))
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)

    first = run_sync(doom_csv())
    assert first.images_failed == 1
    assert first.images_retried == 0
    assert first.failed_assets == [FailedAssetInfo("Doom", ["logo"])]
    assert not store.load_cache_entries(TENANT)[doom].logo_downloaded

    session.serve(f"{CDN}/doom-logo.png")
    second = run_sync(doom_csv())

    assert second.games_synced == 1
    assert second.images_synced == 1
    assert "logo.png" in tree.list_names("Games/Doom")
    assert store.load_cache_entries(TENANT)[doom].logo_downloaded


def test_cover_url_change_replaces_old_file(store, tree, session, run_sync):
    doom = store.add_game(TENANT, "Doom")
    session.serve(f"{CDN}/c1.png")
    session.serve(f"{CDN}/c2.jpg", JPEG_BYTES)
    run_sync(doom_csv(logo="", cover=f"{CDN}/c1.png"))
    assert "cover.png" in tree.list_names("Games/Doom")

    stats = run_sync(doom_csv(logo="", cover=f"{CDN}/c2.jpg"))

    assert stats.games_synced == 1
    assert tree.list_names("Games/Doom") == ["cover.jpg", "info.json"]
    assert store.load_cache_entries(TENANT)[doom].cover_url == f"{CDN}/c2.jpg"
    assert json.loads(tree.read_text("Games/Doom/info.json"))["cover"] == f"{CDN}/c2.jpg"


def test_script_url_image_is_cleaned_up_on_change(store, tree, session, run_sync):
    store.add_game(TENANT, "Doom")
    session.serve(f"{CDN}/img.php?id=3", JPEG_BYTES)
    session.serve(f"{CDN}/c2.png")
    run_sync(doom_csv(logo="", cover=f"{CDN}/img.php?id=3"))
    assert tree.list_names("Games/Doom") == ["cover.jpg", "info.json"]

    run_sync(doom_csv(logo="", cover=f"{CDN}/c2.png"))

    assert tree.list_names("Games/Doom") == ["cover.png", "info.json"]


def test_local_origin_asset_is_never_fetched(store, tree, session, run_sync):
    doom = store.add_game(TENANT, "Doom")
    local_logo = "http://localhost:8080/api/images/doom.png"
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)

    stats = run_sync(doom_csv(logo=local_logo))

    assert local_logo not in session.calls
    assert stats.images_synced == 2
    entry = store.load_cache_entries(TENANT)[doom]
    assert entry.logo_downloaded
    assert entry.logo_url == local_logo
    assert "logo.png" not in tree.list_names("Games/Doom")


class FlakyStore(CatalogStore):
    def __init__(self, path, failing_game_id):
        super().__init__(path)
        self.failing_game_id = failing_game_id

    def save_game_progress(self, tenant_id, entry, clear_modified=False):
        if entry.game_id == self.failing_game_id:
            raise CatalogStoreError("disk I/O error")
        super().save_game_progress(tenant_id, entry, clear_modified)


def test_persistence_failure_is_isolated_to_one_game(tmp_path, session, run_sync):
    catalog = FlakyStore(tmp_path / "flaky.db", failing_game_id=2)
    try:
        rows = []
        for index in range(1, 6):
            catalog.add_game(TENANT, f"Game {index}")
            session.serve(f"{CDN}/cover-{index}.png")
            rows.append(game_row(f"Game {index}", cover=f"{CDN}/cover-{index}.png"))

        stats = run_sync(make_csv(rows), catalog=catalog)

        assert stats.games_synced == 5
        assert len(stats.errors) == 1
        assert "Game 2" in stats.errors[0]
        assert sorted(catalog.load_cache_entries(TENANT)) == [1, 3, 4, 5]
        modified = {g.id: g.modified_since_last_export for g in catalog.list_games(TENANT)}
        assert modified == {1: False, 2: True, 3: False, 4: False, 5: False}
    finally:
        catalog.close()


def test_retry_pass_recovers_transient_failure(store, session, clock, run_sync):
    doom = store.add_game(TENANT, "Doom")
    session.route(f"{CDN}/doom-logo.png", FakeResponse(503), FakeResponse(200, b"png"))

    stats = run_sync(doom_csv(cover=""))

    assert stats.images_retried == 1
    assert stats.images_failed == 0
    assert stats.images_synced == 1
    assert stats.failed_assets == []
    assert 3.0 in clock.sleeps
    assert store.load_cache_entries(TENANT)[doom].logo_downloaded


def test_asset_failing_every_pass_is_reported(store, session, clock, run_sync):
    store.add_game(TENANT, "Doom")
    session.route(f"{CDN}/doom-logo.png", FakeResponse(503))

    stats = run_sync(doom_csv(cover=""))

    assert stats.images_retried == 2
    assert stats.images_failed == 1
    assert stats.failed_assets == [FailedAssetInfo("Doom", ["logo"])]
    assert clock.sleeps == [3.0, 3.0]


def test_terminal_failure_skips_retry_passes(store, session, clock, run_sync):
    store.add_game(TENANT, "Doom")
    session.route(f"{CDN}/doom-logo.png", FakeResponse(404))

    stats = run_sync(doom_csv(cover=""))

    assert stats.images_retried == 0
    assert stats.images_failed == 1
    assert clock.sleeps == []


def test_timeout_marks_host_unhealthy_for_the_run(store, session, run_sync):
    store.add_game(TENANT, "Doom")
    session.route(f"{CDN}/doom-logo.png", requests.Timeout("timed out"))
    session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)

    stats = run_sync(doom_csv())

    assert session.calls == [f"{CDN}/doom-logo.png"]
    assert stats.images_failed == 2
    assert stats.failed_assets == [FailedAssetInfo("Doom", ["logo", "cover"])]


def test_changed_rows_end_to_end(store, session, run_sync):
    store.add_game(TENANT, "A")
    store.add_game(TENANT, "B")
    game_c = store.add_game(TENANT, "C")
    for name in "ABC":
        session.serve(f"{CDN}/{name}-logo.png")
        session.serve(f"{CDN}/{name}-cover.png")
    session.serve(f"{CDN}/B-logo-v2.png")

    def rows(b_logo, c_comment):
        return make_csv(
            [
                game_row("A", logo=f"{CDN}/A-logo.png", cover=f"{CDN}/A-cover.png"),
                game_row("B", logo=b_logo, cover=f"{CDN}/B-cover.png"),
                game_row("C", logo=f"{CDN}/C-logo.png", cover=f"{CDN}/C-cover.png", Comment=c_comment),
            ]
        )

    run_sync(rows(f"{CDN}/B-logo.png", "great"), sink=ArchiveSink())
    store.set_modified(game_c, True)

    archive = ArchiveSink()
    stats = run_sync(rows(f"{CDN}/B-logo-v2.png", "replayed"), sink=archive)

    assert stats.games_synced == 2
    assert stats.games_skipped == 1
    names = archive.entry_names()
    root = "Games Database/Games"
    assert f"{root}/B/info.json" in names
    assert f"{root}/C/info.json" in names
    assert f"{root}/B/logo.png" in names
    assert not any(name.startswith(f"{root}/A/") for name in names)
    assert not any(name.startswith(f"{root}/B/cover") for name in names)
    info_b = json.loads(archive.read_text("Games/B/info.json"))
    assert info_b["logo"] == f"{CDN}/B-logo-v2.png"
    assert json.loads(archive.read_text("Games/C/info.json"))["comment"] == "replayed"


def test_unresolved_and_ambiguous_rows_are_skipped(store, run_sync):
    store.add_game(TENANT, "Doom")
    store.add_game(TENANT, "Doom")
    data = make_csv([game_row("Doom"), game_row("Ghost")])

    stats = run_sync(data)

    assert stats.total_games == 2
    assert stats.games_unresolved == 2
    assert stats.games_synced == 0
    assert len(stats.errors) == 1
    assert "Doom" in stats.errors[0]


def test_games_of_other_tenants_are_not_matched(store, run_sync):
    store.add_game("other", "Doom")
    stats = run_sync(doom_csv())
    assert stats.games_unresolved == 1


def test_name_with_surrounding_spaces_matches_exactly(store, tree, run_sync):
    store.add_game(TENANT, " Doom ")
    stats = run_sync(make_csv([game_row(" Doom ")]))
    assert stats.games_synced == 1
    assert stats.games_unresolved == 0
    assert tree.list_names("Games/Doom") == ["info.json"]


class StaleStore(CatalogStore):
    def load_cache_entries(self, tenant_id):
        return {}


def test_duplicate_cache_entry_is_benign(tmp_path, session, run_sync):
    catalog = StaleStore(tmp_path / "stale.db")
    try:
        catalog.add_game(TENANT, "Doom")
        session.serve(f"{CDN}/doom-logo.png")
        session.serve(f"{CDN}/doom-cover.jpg", JPEG_BYTES)
        run_sync(doom_csv(), catalog=catalog)

        stats = run_sync(doom_csv(), catalog=catalog)

        assert stats.games_synced == 1
        assert stats.errors == []
    finally:
        catalog.close()


def test_cancellation_finishes_current_game(store, session, run_sync):
    cancel = threading.Event()
    for name in ("One", "Two"):
        store.add_game(TENANT, name)
        session.serve(f"{CDN}/{name}-logo.png")
        session.serve(f"{CDN}/{name}-cover.png")
    session.on_get = lambda _url: cancel.set()
    data = make_csv(
        [
            game_row("One", logo=f"{CDN}/One-logo.png", cover=f"{CDN}/One-cover.png"),
            game_row("Two", logo=f"{CDN}/Two-logo.png", cover=f"{CDN}/Two-cover.png"),
        ]
    )

    stats = run_sync(data, cancel_event=cancel)

    assert stats.cancelled
    assert stats.games_synced == 1
    assert session.calls == [f"{CDN}/One-logo.png", f"{CDN}/One-cover.png"]
