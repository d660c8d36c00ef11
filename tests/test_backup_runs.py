"""End-to-end backup runs against a fake APS workspace."""

import io
import json
import time
import zipfile
from threading import Event

import pytest

from aps_backup.config import Config
from aps_backup.errors import DirectoryError, NotFound, SinkError, Unauthorized
from aps_backup.orchestrator import MANIFEST_NAME, BackupOrchestrator
from fakes import (
    BASE,
    STORAGE,
    FakeResponse,
    FakeSession,
    acme_workspace,
    folder_record,
    folder_url,
    hub_record,
    hubs_url,
    item_record,
    jsonapi,
    projects_url,
    slow,
    top_folders_url,
    version_record,
    versions_url,
)


def make_config(**overrides) -> Config:
    settings = dict(
        access_token="tok",
        api_base_url=BASE,
        backoff_base=0.0,
        max_retries=2,
        listing_timeout=2.0,
        download_timeout=2.0,
        max_concurrent_downloads=2,
    )
    settings.update(overrides)
    return Config(**settings)


def plan_pdf_routes(url: str | None = "default") -> dict:
    """Scenario workspace: Acme Co / Tower / plan.pdf with one version."""
    routes = acme_workspace([item_record("i.plan", "plan.pdf")])
    routes[versions_url("b.tower", "i.plan")] = jsonapi(version_record("v.plan", "plan.pdf", url=url))
    routes[f"{STORAGE}/v.plan"] = FakeResponse(body=b"%PDF-1.7 plan")
    return routes


def run_full(routes: dict, stop_event: Event | None = None, **overrides):
    orchestrator = BackupOrchestrator(
        make_config(**overrides), session=FakeSession(routes), stop_event=stop_event
    )
    stream = orchestrator.run_full_backup("tok")
    archive = zipfile.ZipFile(io.BytesIO(stream.read()))
    return archive, orchestrator


def file_names(archive: zipfile.ZipFile) -> list[str]:
    return [n for n in archive.namelist() if n != MANIFEST_NAME]


def manifest(archive: zipfile.ZipFile) -> dict:
    return json.loads(archive.read(MANIFEST_NAME))


class TestScenarios:
    """The four reference backup scenarios."""

    def test_single_version_is_archived(self):
        archive, orchestrator = run_full(plan_pdf_routes())

        assert file_names(archive) == ["Acme_Co/Tower/plan.pdf"]
        assert archive.read("Acme_Co/Tower/plan.pdf") == b"%PDF-1.7 plan"
        assert archive.getinfo("Acme_Co/Tower/plan.pdf").date_time == (2024, 5, 1, 10, 20, 30)
        assert orchestrator.stats.is_complete

    def test_missing_download_url_is_skipped(self):
        archive, orchestrator = run_full(plan_pdf_routes(url=None))

        assert not any(n.startswith("Acme_Co/Tower/") for n in file_names(archive))
        assert orchestrator.stats.versions_skipped == 1
        assert manifest(archive)["skipped"] == [
            {"path": "Acme_Co/Tower/plan.pdf", "reason": "no download URL"}
        ]

    def test_empty_folder_gets_placeholder(self):
        routes = acme_workspace([folder_record("f.draw", "Drawings")])
        routes[folder_url("b.tower", "f.draw")] = jsonapi()

        archive, _ = run_full(routes)

        names = file_names(archive)
        assert names == ["Acme_Co/Tower/Drawings/"]
        assert archive.getinfo("Acme_Co/Tower/Drawings/").is_dir()

    def test_missing_token_makes_no_calls(self):
        session = FakeSession(plan_pdf_routes())
        orchestrator = BackupOrchestrator(make_config(), session=session)

        with pytest.raises(Unauthorized):
            orchestrator.run_full_backup("")
        with pytest.raises(Unauthorized):
            orchestrator.run_project_backup(None, "b.acme", "b.tower")
        assert session.calls == []


class TestWorkspaceTraversal:
    """Containment and traversal rules for whole-workspace runs."""

    def test_empty_hub_yields_one_placeholder(self):
        routes = plan_pdf_routes()
        routes[hubs_url()] = jsonapi(hub_record("b.acme", "Acme Co"), hub_record("b.empty", "Empty Hub"))
        routes[projects_url("b.empty")] = jsonapi()

        archive, orchestrator = run_full(routes)

        under_hub = [n for n in archive.namelist() if n.startswith("Empty_Hub/")]
        assert under_hub == ["Empty_Hub/"]
        assert "Acme_Co/Tower/plan.pdf" in archive.namelist()
        assert orchestrator.stats.hubs == 2

    def test_failed_listing_keeps_siblings(self):
        routes = acme_workspace([
            folder_record("f.bad", "Broken"),
            folder_record("f.ok", "Notes"),
        ])
        routes[folder_url("b.tower", "f.bad")] = FakeResponse(500)
        routes[folder_url("b.tower", "f.ok")] = jsonapi(item_record("i.notes", "notes.txt"))
        routes[versions_url("b.tower", "i.notes")] = jsonapi(version_record("v.notes", "notes.txt"))
        routes[f"{STORAGE}/v.notes"] = FakeResponse(body=b"notes")

        archive, orchestrator = run_full(routes)

        assert file_names(archive) == ["Acme_Co/Tower/Notes/notes.txt"]
        assert orchestrator.stats.listings_failed == 1
        skipped = manifest(archive)["skipped"]
        assert skipped[0]["path"] == "Acme_Co/Tower/Broken"
        assert "500" in skipped[0]["reason"]

    def test_failed_project_listing_keeps_other_hubs(self):
        routes = plan_pdf_routes()
        routes[hubs_url()] = jsonapi(hub_record("b.down", "Down"), hub_record("b.acme", "Acme Co"))
        routes[projects_url("b.down")] = FakeResponse(403)

        archive, orchestrator = run_full(routes)

        assert file_names(archive) == ["Acme_Co/Tower/plan.pdf"]
        assert manifest(archive)["skipped"][0]["path"] == "Down/"

    def test_hanging_listing_times_out(self):
        routes = acme_workspace([
            folder_record("f.slow", "Slow"),
            item_record("i.plan", "plan.pdf"),
        ])
        routes[folder_url("b.tower", "f.slow")] = slow(jsonapi(), 5.0)
        routes[versions_url("b.tower", "i.plan")] = jsonapi(version_record("v.plan", "plan.pdf"))
        routes[f"{STORAGE}/v.plan"] = FakeResponse(body=b"plan")

        start = time.monotonic()
        archive, orchestrator = run_full(routes, listing_timeout=0.2)

        assert time.monotonic() - start < 3.0
        assert file_names(archive) == ["Acme_Co/Tower/plan.pdf"]
        assert "timed out" in manifest(archive)["skipped"][0]["reason"]

    def test_hanging_download_times_out(self):
        routes = plan_pdf_routes()
        routes[f"{STORAGE}/v.plan"] = slow(FakeResponse(body=b"late"), 5.0)

        start = time.monotonic()
        archive, orchestrator = run_full(routes, download_timeout=0.2)

        assert time.monotonic() - start < 3.0
        assert file_names(archive) == []
        assert orchestrator.stats.versions_skipped == 1

    def test_cycle_is_contained(self):
        routes = acme_workspace([folder_record("f.loop", "Loop")])
        routes[folder_url("b.tower", "f.loop")] = jsonapi(
            folder_record("f.loop", "Again"), item_record("i.note", "note.txt")
        )
        routes[versions_url("b.tower", "i.note")] = jsonapi(version_record("v.note", "note.txt"))
        routes[f"{STORAGE}/v.note"] = FakeResponse(body=b"note")

        archive, orchestrator = run_full(routes)

        assert file_names(archive) == ["Acme_Co/Tower/Loop/note.txt"]
        skipped = manifest(archive)["skipped"]
        assert skipped[0]["path"] == "Acme_Co/Tower/Loop/Again"
        assert "Cycle detected" in skipped[0]["reason"]

    def test_entries_follow_discovery_order(self):
        routes = acme_workspace([item_record("i.a", "a.bin"), item_record("i.b", "b.bin")])
        routes[versions_url("b.tower", "i.a")] = jsonapi(version_record("v.a", "a.bin"))
        routes[versions_url("b.tower", "i.b")] = jsonapi(version_record("v.b", "b.bin"))
        routes[f"{STORAGE}/v.a"] = slow(FakeResponse(body=b"a"), 0.3)
        routes[f"{STORAGE}/v.b"] = FakeResponse(body=b"b")

        archive, _ = run_full(routes)

        assert file_names(archive) == ["Acme_Co/Tower/a.bin", "Acme_Co/Tower/b.bin"]

    def test_same_workspace_gives_same_paths(self):
        routes = acme_workspace([
            folder_record("f.draw", "Drawings"),
            item_record("i.plan", "plan.pdf"),
        ])
        routes[folder_url("b.tower", "f.draw")] = jsonapi()
        routes[versions_url("b.tower", "i.plan")] = jsonapi(version_record("v.plan", "plan.pdf"))
        routes[f"{STORAGE}/v.plan"] = FakeResponse(body=b"plan")

        first, _ = run_full(routes)
        second, _ = run_full(routes)

        assert set(first.namelist()) == set(second.namelist())


class TestVersionPolicy:
    """Every version is kept beside the item unless only the latest is wanted."""

    def routes(self) -> dict:
        routes = acme_workspace([item_record("i.plan", "plan.pdf")])
        routes[versions_url("b.tower", "i.plan")] = jsonapi(
            version_record("v.3", "plan.pdf", 3),
            version_record("v.1", "plan.pdf", 1),
            version_record("v.2", "plan.pdf", 2),
        )
        for n in (1, 2, 3):
            routes[f"{STORAGE}/v.{n}"] = FakeResponse(body=f"rev {n}".encode())
        return routes

    def test_all_versions(self):
        archive, orchestrator = run_full(self.routes())

        assert file_names(archive) == [
            "Acme_Co/Tower/plan.pdf",
            "Acme_Co/Tower/plan (v2).pdf",
            "Acme_Co/Tower/plan (v1).pdf",
        ]
        assert archive.read("Acme_Co/Tower/plan.pdf") == b"rev 3"
        assert archive.read("Acme_Co/Tower/plan (v1).pdf") == b"rev 1"
        assert orchestrator.stats.versions_archived == 3

    def test_latest_only(self):
        archive, _ = run_full(self.routes(), version_policy="latest")

        assert file_names(archive) == ["Acme_Co/Tower/plan.pdf"]
        assert archive.read("Acme_Co/Tower/plan.pdf") == b"rev 3"

    def test_older_version_does_not_clash_with_sibling(self):
        routes = acme_workspace([item_record("i.plan", "plan.pdf"), item_record("i.v1", "plan_v1.pdf")])
        routes[versions_url("b.tower", "i.plan")] = jsonapi(
            version_record("v.2", "plan.pdf", 2), version_record("v.1", "plan.pdf", 1)
        )
        routes[versions_url("b.tower", "i.v1")] = jsonapi(version_record("v.s", "plan_v1.pdf"))
        for key in ("1", "2", "s"):
            routes[f"{STORAGE}/v.{key}"] = FakeResponse(body=key.encode())

        archive, _ = run_full(routes)

        names = file_names(archive)
        assert len(names) == len(set(names)) == 3
        assert archive.read("Acme_Co/Tower/plan_v1.pdf") == b"s"
        assert archive.read("Acme_Co/Tower/plan (v1).pdf") == b"1"

    def test_long_item_name_keeps_versions_apart(self):
        long_name = "L" * 300
        routes = acme_workspace([item_record("i.long", long_name)])
        routes[versions_url("b.tower", "i.long")] = jsonapi(
            version_record("v.2", long_name, 2), version_record("v.1", long_name, 1)
        )
        routes[f"{STORAGE}/v.2"] = FakeResponse(body=b"2")
        routes[f"{STORAGE}/v.1"] = FakeResponse(body=b"1")

        archive, _ = run_full(routes)

        names = file_names(archive)
        assert len(names) == len(set(names)) == 2
        assert all(len(n.rsplit("/", 1)[1]) <= 255 for n in names)


class TestProjectBackup:
    """Single-project runs."""

    def test_paths_are_rooted_at_project(self):
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))

        result = orchestrator.run_project_backup("tok", "b.acme", "b.tower")

        archive = zipfile.ZipFile(io.BytesIO(result.read()))
        assert file_names(archive) == ["Tower/plan.pdf"]
        data = manifest(archive)
        assert data["mode"] == "project"
        assert data["project_id"] == "b.tower"

    def test_unknown_project(self):
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))
        with pytest.raises(NotFound) as exc_info:
            orchestrator.run_project_backup("tok", "b.acme", "b.nope")
        assert exc_info.value.kind == "Project"

    def test_unknown_hub(self):
        session = FakeSession(plan_pdf_routes())
        orchestrator = BackupOrchestrator(make_config(), session=session)
        with pytest.raises(NotFound) as exc_info:
            orchestrator.run_project_backup("tok", "b.other", "b.tower")
        assert exc_info.value.kind == "Hub"
        assert session.calls == [hubs_url()]

    def test_root_listing_failure_is_fatal(self):
        routes = plan_pdf_routes()
        routes[top_folders_url("b.acme", "b.tower")] = FakeResponse(500)
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(routes))

        with pytest.raises(DirectoryError):
            orchestrator.run_project_backup("tok", "b.acme", "b.tower")

    def test_streamed_failure_reaches_reader(self):
        routes = plan_pdf_routes()
        routes[top_folders_url("b.acme", "b.tower")] = FakeResponse(500)
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(routes))

        stream = orchestrator.run_project_backup("tok", "b.acme", "b.tower", delivery="stream")

        with pytest.raises(DirectoryError):
            stream.read()

    def test_unknown_project_leaves_output_untouched(self):
        out = io.BytesIO()
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))

        with pytest.raises(NotFound):
            orchestrator.run_project_backup("tok", "b.acme", "b.nope", output=out, delivery="stream")

        assert out.getvalue() == b""

    def test_root_listing_failure_leaves_output_untouched(self):
        routes = plan_pdf_routes()
        routes[top_folders_url("b.acme", "b.tower")] = FakeResponse(500)
        out = io.BytesIO()
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(routes))

        with pytest.raises(DirectoryError):
            orchestrator.run_project_backup("tok", "b.acme", "b.tower", output=out, delivery="stream")

        assert out.getvalue() == b""
        assert not out.closed


class TestDelivery:
    """Sink selection, manifest and run-level failures."""

    def test_manifest_reports_run(self):
        archive, _ = run_full(plan_pdf_routes())

        data = manifest(archive)
        assert data["mode"] == "workspace"
        assert data["version_policy"] == "all"
        assert data["stats"]["versions_archived"] == 1
        assert data["stats"]["complete"] is True
        assert data["skipped"] == []

    def test_manifest_can_be_disabled(self):
        archive, _ = run_full(plan_pdf_routes(), write_manifest=False)
        assert archive.namelist() == ["Acme_Co/Tower/plan.pdf"]

    def test_buffered_full_backup(self):
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))

        result = orchestrator.run_full_backup("tok", delivery="buffer")

        assert "Acme_Co/Tower/plan.pdf" in zipfile.ZipFile(result).namelist()

    def test_stream_into_given_output(self):
        out = io.BytesIO()
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))

        result = orchestrator.run_full_backup("tok", output=out)

        assert result is out
        assert not out.closed
        assert "Acme_Co/Tower/plan.pdf" in zipfile.ZipFile(io.BytesIO(out.getvalue())).namelist()

    def test_unknown_delivery(self):
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))
        with pytest.raises(ValueError):
            orchestrator.run_full_backup("tok", delivery="carrier-pigeon")

    def test_hub_listing_failure_is_fatal(self):
        routes = {hubs_url(): FakeResponse(401)}
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(routes))
        with pytest.raises(DirectoryError):
            orchestrator.run_full_backup("tok")

    def test_hub_listing_failure_leaves_output_untouched(self):
        routes = {hubs_url(): FakeResponse(401)}
        out = io.BytesIO()
        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(routes))

        with pytest.raises(DirectoryError):
            orchestrator.run_full_backup("tok", output=out)

        assert out.getvalue() == b""

    def test_output_failure_is_fatal(self):
        class FullDisk(io.RawIOBase):
            def writable(self):
                return True

            def write(self, b):
                raise OSError("no space left on device")

        orchestrator = BackupOrchestrator(make_config(), session=FakeSession(plan_pdf_routes()))
        with pytest.raises(SinkError):
            orchestrator.run_full_backup("tok", output=FullDisk())

    def test_stopped_run_still_finalizes(self):
        stop = Event()
        stop.set()

        archive, orchestrator = run_full(plan_pdf_routes(), stop_event=stop)

        assert file_names(archive) == []
        assert manifest(archive)["stats"]["interrupted"] is True
        assert orchestrator.stats.interrupted

    def test_run_deadline_interrupts(self):
        routes = acme_workspace([item_record(f"i.{n}", f"{n}.bin") for n in range(3)])
        for n in range(3):
            routes[versions_url("b.tower", f"i.{n}")] = jsonapi(version_record(f"v.{n}", f"{n}.bin"))
            routes[f"{STORAGE}/v.{n}"] = slow(FakeResponse(body=b"x"), 0.5)

        archive, orchestrator = run_full(routes, run_timeout=0.2, max_concurrent_downloads=1)

        assert archive.testzip() is None
        assert orchestrator.stats.interrupted
        assert orchestrator.stats.versions_archived < 3
