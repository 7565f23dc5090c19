"""
Tests for the catalog service
"""
import io
import logging
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from appshelf.exceptions import (
    DuplicateRelease, Forbidden, InvalidArtifact, InvalidField, InvalidPackageType, NotFound,
)
from appshelf.models import Application, DownloadLog, Extra, Release
from appshelf.schemas import ApplicationCreate, ApplicationUpdate, ReleaseFields, ReleaseUpdate
from appshelf.services.blob_store import BlobStore
from appshelf.services.catalog_service import CatalogService, PathArtifact, UploadedArtifact
from appshelf.services.variants import NeedsMoreInput, Resolved, Selection


def upload(content=b"payload", filename="setup.exe"):
    return UploadedArtifact(io.BytesIO(content), filename)


def fields(version="1.0", version_type="installer", **kwargs):
    return ReleaseFields(version_number=version, version_type=version_type, **kwargs)


def stored_files(root):
    return sorted(p.name for p in root.iterdir() if p.is_file())


class TestCreateRelease:

    def test_upload_is_stored_and_measured(self, catalog, store, admin, application, upload_root):
        release = catalog.create_release(admin, application.id, fields(operating_system="Windows"), upload(b"abc"))

        assert release.id is not None
        assert release.file_size == 3
        assert release.architecture == []
        assert release.file_path.startswith(store.root)
        assert len(stored_files(upload_root)) == 1

    def test_path_reference_is_measured_not_copied(self, catalog, admin, application, external_file, upload_root):
        release = catalog.create_release(
            admin, application.id, fields(architecture="x86_64, arm64"), PathArtifact(str(external_file)),
        )

        assert release.file_path == str(external_file)
        assert release.file_size == 2048
        assert release.architecture == ["x86_64", "arm64"]
        assert stored_files(upload_root) == []

    def test_missing_path_is_rejected_without_write(self, catalog, admin, application, db_session):
        with pytest.raises(InvalidArtifact):
            catalog.create_release(admin, application.id, fields(), PathArtifact("/nonexistent/file.zip"))
        assert db_session.query(Release).count() == 0

    def test_directory_and_relative_paths_are_rejected(self, catalog, admin, application, tmp_path):
        with pytest.raises(InvalidArtifact):
            catalog.create_release(admin, application.id, fields(), PathArtifact(str(tmp_path)))
        with pytest.raises(InvalidArtifact):
            catalog.create_release(admin, application.id, fields(), PathArtifact("relative/file.zip"))

    def test_path_inside_upload_root_is_rejected(self, catalog, admin, application, upload_root):
        inside = upload_root / "sneaky.zip"
        inside.write_bytes(b"1")
        with pytest.raises(InvalidArtifact):
            catalog.create_release(admin, application.id, fields(), PathArtifact(str(inside)))

    def test_artifact_is_required(self, catalog, admin, application):
        with pytest.raises(InvalidArtifact):
            catalog.create_release(admin, application.id, fields(), None)

    def test_invalid_package_type_writes_nothing(self, catalog, admin, application, upload_root, db_session):
        with pytest.raises(InvalidPackageType):
            catalog.create_release(admin, application.id, fields(version_type="appimage"), upload())
        assert stored_files(upload_root) == []
        assert db_session.query(Release).count() == 0

    def test_unknown_application(self, catalog, admin, upload_root):
        with pytest.raises(NotFound):
            catalog.create_release(admin, 999, fields(), upload())
        assert stored_files(upload_root) == []

    def test_source_forces_source_code(self, catalog, admin, application):
        release = catalog.create_release(
            admin, application.id, fields(version_type="source", operating_system="Linux"), upload(),
        )
        assert release.operating_system == "Source Code"

    def test_viewer_cannot_create(self, catalog, viewer, application, upload_root):
        with pytest.raises(Forbidden):
            catalog.create_release(viewer, application.id, fields(), upload())
        assert stored_files(upload_root) == []

    def test_duplicate_yields_one_success_one_duplicate(self, catalog, admin, application, upload_root, db_session):
        catalog.create_release(admin, application.id, fields(operating_system="Windows"), upload())
        with pytest.raises(DuplicateRelease) as excinfo:
            catalog.create_release(admin, application.id, fields(operating_system="Windows"), upload())

        assert excinfo.value.code == "DUPLICATE_RELEASE"
        assert db_session.query(Release).count() == 1
        # the second upload was removed again
        assert len(stored_files(upload_root)) == 1

    def test_duplicate_with_null_os(self, catalog, admin, application, external_file):
        catalog.create_release(admin, application.id, fields(), PathArtifact(str(external_file)))
        with pytest.raises(DuplicateRelease):
            catalog.create_release(admin, application.id, fields(operating_system="  "), upload())

    def test_architecture_is_not_part_of_the_key(self, catalog, admin, application):
        catalog.create_release(admin, application.id, fields(architecture=["x86_64"]), upload())
        with pytest.raises(DuplicateRelease):
            catalog.create_release(admin, application.id, fields(architecture=["arm64"]), upload())

    def test_duplicate_reported_even_when_cleanup_fails(self, db_session, store, admin, application, caplog):
        blobs = MagicMock(wraps=store)
        blobs.delete.side_effect = PermissionError("read-only")
        service = CatalogService(db_session, blobs)
        service.create_release(admin, application.id, fields(), upload())

        with caplog.at_level(logging.ERROR, logger="catalog"):
            with pytest.raises(DuplicateRelease):
                service.create_release(admin, application.id, fields(), upload())
        assert "ORPHAN_CLEANUP_FAILURE" in caplog.text

    def test_path_reference_never_deleted_on_failure(self, db_session, store, admin, application, external_file):
        blobs = MagicMock(wraps=store)
        service = CatalogService(db_session, blobs)
        service.create_release(admin, application.id, fields(), upload())

        with pytest.raises(DuplicateRelease):
            service.create_release(admin, application.id, fields(), PathArtifact(str(external_file)))
        blobs.delete.assert_not_called()
        assert external_file.exists()


class TestMultipleOsFlag:

    def test_flag_follows_releases(self, catalog, admin, application, db_session):
        windows = catalog.create_release(admin, application.id, fields(operating_system="Windows"), upload())
        db_session.refresh(application)
        assert application.has_multiple_os is False

        linux = catalog.create_release(admin, application.id, fields(operating_system="Linux"), upload())
        db_session.refresh(application)
        assert application.has_multiple_os is True

        catalog.update_release(admin, linux.id, ReleaseUpdate(operating_system="Windows", version_number="1.1"))
        db_session.refresh(application)
        assert application.has_multiple_os is False

        catalog.update_release(admin, windows.id, ReleaseUpdate(version_type="source"))
        db_session.refresh(application)
        assert application.has_multiple_os is True

        catalog.delete_release(admin, windows.id)
        db_session.refresh(application)
        assert application.has_multiple_os is False

    def test_null_os_does_not_count(self, catalog, admin, application, db_session):
        catalog.create_release(admin, application.id, fields(), upload())
        catalog.create_release(admin, application.id, fields(operating_system="Linux"), upload())
        db_session.refresh(application)
        assert application.has_multiple_os is False


class TestUpdateRelease:

    def test_unset_fields_are_untouched_and_null_clears(self, catalog, admin, application):
        release = catalog.create_release(
            admin, application.id, fields(operating_system="Windows", notes="first", architecture=["x86_64"]), upload(),
        )
        updated = catalog.update_release(admin, release.id, ReleaseUpdate(notes=None))

        assert updated.notes is None
        assert updated.operating_system == "Windows"
        assert updated.architecture == ["x86_64"]

        updated = catalog.update_release(admin, release.id, ReleaseUpdate(architecture=None))
        assert updated.architecture == []

    def test_required_fields_cannot_be_cleared(self, catalog, admin, application):
        release = catalog.create_release(admin, application.id, fields(), upload())
        with pytest.raises(InvalidField):
            catalog.update_release(admin, release.id, ReleaseUpdate(version_number=None))
        with pytest.raises(InvalidField):
            catalog.update_release(admin, release.id, ReleaseUpdate(file_path=None))

    def test_empty_update_is_rejected(self, catalog, admin, application):
        release = catalog.create_release(admin, application.id, fields(), upload())
        with pytest.raises(InvalidField):
            catalog.update_release(admin, release.id, ReleaseUpdate())

    def test_source_ignores_supplied_os(self, catalog, admin, application):
        release = catalog.create_release(admin, application.id, fields(version_type="source"), upload())
        updated = catalog.update_release(admin, release.id, ReleaseUpdate(operating_system="macOS"))
        assert updated.operating_system == "Source Code"

    def test_leaving_source_drops_source_code_label(self, catalog, admin, application):
        release = catalog.create_release(admin, application.id, fields(version_type="source"), upload())
        updated = catalog.update_release(admin, release.id, ReleaseUpdate(version_type="portable"))
        assert updated.operating_system is None

        release = catalog.create_release(admin, application.id, fields("2.0", version_type="source"), upload())
        updated = catalog.update_release(
            admin, release.id, ReleaseUpdate(version_type="installer", operating_system="Linux"),
        )
        assert updated.operating_system == "Linux"

    def test_invalid_type_on_update(self, catalog, admin, application):
        release = catalog.create_release(admin, application.id, fields(), upload())
        with pytest.raises(InvalidPackageType):
            catalog.update_release(admin, release.id, ReleaseUpdate(version_type="zip"))

    def test_new_path_is_validated_and_measured(self, catalog, admin, application, external_file, upload_root):
        release = catalog.create_release(admin, application.id, fields(), upload(b"12345"))
        assert len(stored_files(upload_root)) == 1

        with pytest.raises(InvalidArtifact):
            catalog.update_release(admin, release.id, ReleaseUpdate(file_path="/nonexistent/file.zip"))

        updated = catalog.update_release(admin, release.id, ReleaseUpdate(file_path=str(external_file)))
        assert updated.file_path == str(external_file)
        assert updated.file_size == 2048
        # the replaced upload is no longer referenced
        assert stored_files(upload_root) == []

    def test_update_into_duplicate(self, catalog, admin, application, upload_root):
        catalog.create_release(admin, application.id, fields("1.0"), upload())
        second = catalog.create_release(admin, application.id, fields("2.0"), upload())

        with pytest.raises(DuplicateRelease):
            catalog.update_release(admin, second.id, ReleaseUpdate(version_number="1.0"), artifact=upload(b"new"))
        assert len(stored_files(upload_root)) == 2

    def test_unknown_release(self, catalog, admin):
        with pytest.raises(NotFound):
            catalog.update_release(admin, 42, ReleaseUpdate(notes="x"))


class TestDeleteRelease:

    def test_uploaded_file_is_deleted(self, db_session, store, admin, application, upload_root):
        blobs = MagicMock(wraps=store)
        service = CatalogService(db_session, blobs)
        release = service.create_release(admin, application.id, fields(), upload())

        service.delete_release(admin, release.id)

        blobs.delete.assert_called_once_with(release.file_path)
        assert stored_files(upload_root) == []
        assert db_session.query(Release).count() == 0

    def test_path_reference_is_never_deleted(self, db_session, store, admin, application, external_file):
        blobs = MagicMock(wraps=store)
        service = CatalogService(db_session, blobs)
        release = service.create_release(admin, application.id, fields(), PathArtifact(str(external_file)))

        service.delete_release(admin, release.id)

        blobs.delete.assert_not_called()
        assert external_file.exists()

    def test_download_logs_go_with_the_release(self, catalog, admin, viewer, application, db_session):
        release = catalog.create_release(admin, application.id, fields(), upload())
        catalog.record_download(viewer, release.id)

        catalog.delete_release(admin, release.id)

        assert db_session.query(DownloadLog).count() == 0

    def test_missing(self, catalog, admin):
        with pytest.raises(NotFound):
            catalog.delete_release(admin, 7)


class TestApplications:

    def test_update_is_partial(self, catalog, admin, application):
        updated = catalog.update_application(admin, application.id, ApplicationUpdate(publisher="ACME", tags=[" a ", "a", "b"]))
        assert updated.publisher == "ACME"
        assert updated.developer == "Foo Labs"
        assert updated.tags == ["a", "b"]

    def test_blank_name_rejected(self, catalog, admin):
        with pytest.raises(InvalidField):
            catalog.create_application(admin, ApplicationCreate(name="   "))

    def test_list_with_counts_and_filters(self, catalog, admin, application):
        other = catalog.create_application(admin, ApplicationCreate(name="Bar", tags=["games"]))
        catalog.create_release(admin, application.id, fields("1.0", operating_system="Linux"), upload())
        catalog.create_release(admin, application.id, fields("1.1", operating_system="Linux", sort_order=3), upload())

        summaries = {s.name: s for s in catalog.list_applications()}
        assert summaries["Foo"].version_count == 2
        assert summaries["Foo"].latest_version == "1.1"
        assert summaries["Bar"].version_count == 0
        assert summaries["Bar"].latest_version is None

        assert [s.id for s in catalog.list_applications(operating_system="Linux")] == [application.id]
        assert [s.id for s in catalog.list_applications(tags=["games"])] == [other.id]
        assert [s.id for s in catalog.list_applications(q="foo lab")] == [application.id]
        assert [s.name for s in catalog.list_applications(sort="name")] == ["Bar", "Foo"]
        assert catalog.all_tags() == ["dev", "games", "utility"]

    def test_delete_cascades_and_keeps_path_references(
        self, catalog, admin, application, external_file, upload_root, db_session,
    ):
        catalog.create_release(admin, application.id, fields("1.0"), upload())
        catalog.create_release(admin, application.id, fields("2.0"), PathArtifact(str(external_file)))
        catalog.create_extra(admin, application.id, "Manual", None, upload(b"pdf", "manual.pdf"))

        removed = catalog.delete_application(admin, application.id)

        assert removed == 2
        assert stored_files(upload_root) == []
        assert external_file.exists()
        assert db_session.query(Application).count() == 0
        assert db_session.query(Release).count() == 0
        assert db_session.query(Extra).count() == 0

    def test_delete_continues_when_file_cleanup_fails(self, db_session, store, admin, application, caplog):
        blobs = MagicMock(wraps=store)
        service = CatalogService(db_session, blobs)
        service.create_release(admin, application.id, fields("1.0"), upload())
        service.create_release(admin, application.id, fields("2.0"), upload())
        blobs.delete.side_effect = OSError("disk gone")

        with caplog.at_level(logging.ERROR, logger="catalog"):
            removed = service.delete_application(admin, application.id)

        assert removed == 0
        assert blobs.delete.call_count == 2
        assert db_session.query(Application).count() == 0
        assert caplog.text.count("ORPHAN_CLEANUP_FAILURE") == 2


class TestReorder:

    def test_assigns_descending_sort_order(self, catalog, admin, application):
        a = catalog.create_release(admin, application.id, fields("1.0"), upload())
        b = catalog.create_release(admin, application.id, fields("2.0"), upload())
        c = catalog.create_release(admin, application.id, fields("3.0"), upload())

        ordered = catalog.reorder_releases(admin, application.id, [b.id, c.id, a.id])

        assert [r.id for r in ordered] == [b.id, c.id, a.id]
        assert [r.sort_order for r in ordered] == [3, 2, 1]

    def test_partial_list_changes_nothing(self, catalog, admin, application, db_session):
        a = catalog.create_release(admin, application.id, fields("1.0"), upload())
        b = catalog.create_release(admin, application.id, fields("2.0"), upload())

        with pytest.raises(InvalidField):
            catalog.reorder_releases(admin, application.id, [b.id])
        with pytest.raises(InvalidField):
            catalog.reorder_releases(admin, application.id, [a.id, b.id, b.id])

        db_session.expire_all()
        assert {r.sort_order for r in db_session.query(Release)} == {0}


class TestVariantsAndDownloads:

    def test_resolve_through_service(self, catalog, admin, application):
        catalog.create_release(admin, application.id, fields("v1", operating_system="Windows"), upload())
        portable = catalog.create_release(
            admin, application.id, fields("v1", "portable", operating_system="Windows"), upload(),
        )

        result = catalog.resolve(application.id, Selection(operating_system="Windows", version_number="v1"))
        assert isinstance(result, NeedsMoreInput)
        assert result.axis == "version_type"

        result = catalog.resolve(application.id, Selection(version_number="v1", version_type="portable"))
        assert isinstance(result, Resolved)
        assert result.release.id == portable.id

    def test_record_download(self, catalog, admin, viewer, application, db_session):
        release = catalog.create_release(admin, application.id, fields(), upload())

        assert catalog.record_download(viewer, release.id) is True
        entry = db_session.query(DownloadLog).one()
        assert entry.user_id == "bob"
        assert entry.version_id == release.id
        assert db_session.query(DownloadLog).filter_by(version_id=release.id).count() == 1

    def test_download_log_failure_does_not_raise(self, catalog, admin, viewer, application, caplog):
        release = catalog.create_release(admin, application.id, fields(), upload())

        with patch.object(catalog.db, "commit", side_effect=SQLAlchemyError("db down")):
            with caplog.at_level(logging.ERROR, logger="catalog"):
                assert catalog.record_download(viewer, release.id) is False
        assert "Could not log download" in caplog.text

    def test_open_release_missing_file(self, catalog, admin, application, external_file):
        release = catalog.create_release(admin, application.id, fields(), PathArtifact(str(external_file)))
        external_file.unlink()
        with pytest.raises(NotFound):
            catalog.open_release(release.id)


class TestMaintenance:

    def test_sweep_removes_only_unreferenced_files(self, catalog, admin, application, upload_root):
        release = catalog.create_release(admin, application.id, fields(), upload())
        (upload_root / "leftover.iso").write_bytes(b"old")

        removed = catalog.sweep_orphans(admin)

        assert [p.rsplit("/", 1)[-1] for p in removed] == ["leftover.iso"]
        assert stored_files(upload_root) == [release.file_path.rsplit("/", 1)[-1]]

    def test_integrity_report(self, catalog, admin, application, external_file, db_session):
        catalog.create_release(admin, application.id, fields(operating_system="Windows"), PathArtifact(str(external_file)))
        catalog.create_release(admin, application.id, fields(operating_system="Linux"), upload())
        assert catalog.integrity_report()["ok"] is True

        external_file.unlink()
        application.has_multiple_os = False
        db_session.commit()

        report = catalog.integrity_report()
        assert report["ok"] is False
        assert [m["file_path"] for m in report["missing_files"]] == [str(external_file)]
        assert report["stale_flags"] == [application.id]


class TestBlobStore:

    def test_size_limit(self, tmp_path):
        store = BlobStore(str(tmp_path / "small"), max_bytes=10)
        with pytest.raises(InvalidArtifact):
            store.put(io.BytesIO(b"x" * 20), "big.bin")
        assert list(store.list_files()) == []

    def test_delete_is_idempotent(self, store):
        path, _ = store.put(io.BytesIO(b"abc"), "a.txt")
        store.delete(path)
        store.delete(path)
        with pytest.raises(NotFound):
            store.stat(path)

    def test_stream_range(self, store):
        path, size = store.put(io.BytesIO(b"0123456789"), "digits.txt")
        assert size == 10
        assert b"".join(store.stream(path, 2, 5)) == b"2345"
        assert b"".join(store.stream(path)) == b"0123456789"

    def test_is_managed(self, store, upload_root, external_file):
        assert store.is_managed(str(upload_root / "x.bin"))
        assert not store.is_managed(str(external_file))
        assert not store.is_managed(str(upload_root / ".." / "elsewhere.bin"))
        assert not store.is_managed(None)
