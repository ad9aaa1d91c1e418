import pytest

from contentgate.models.resource import Resource
from contentgate.services import storage
from tests.conftest import FAKE_JPEG, FakeConverter, add_resource, make_pdf


@pytest.fixture
def premium(db, settings):
    return add_resource(db, pages=50, is_premium=True, preview_units=3, title="Premium Workbook")


class TestPremiumBoundary:
    def test_member_sees_preview_pages_only(self, client, premium, member_headers):
        ok = client.get(f"/api/resources/{premium.id}/unit/3", headers=member_headers)
        assert ok.status_code == 200
        assert ok.headers["content-type"] == "application/pdf"
        assert ok.headers["x-page-number"] == "3"
        assert ok.headers["x-total-pages"] == "50"
        assert ok.headers["x-content-type-options"] == "nosniff"
        assert ok.headers["x-frame-options"] == "SAMEORIGIN"
        assert ok.headers["cache-control"].startswith("private")

        denied = client.get(f"/api/resources/{premium.id}/unit/4", headers=member_headers)
        assert denied.status_code == 403
        body = denied.json()
        assert body["isPremiumContent"] is True
        assert body["availablePages"] == 3
        assert body["totalPages"] == 50
        assert body["upgradeRequired"] is True

    def test_subscriber_sees_everything(self, client, premium, subscriber_headers):
        assert client.get(f"/api/resources/{premium.id}/unit/50", headers=subscriber_headers).status_code == 200

    @pytest.mark.parametrize("unit", [0, 51])
    def test_out_of_range_is_404(self, client, premium, subscriber_headers, unit):
        assert client.get(f"/api/resources/{premium.id}/unit/{unit}", headers=subscriber_headers).status_code == 404

    def test_anonymous_limited_to_anonymous_pages(self, client, premium):
        assert client.get(f"/api/resources/{premium.id}/unit/2").status_code == 200
        assert client.get(f"/api/resources/{premium.id}/unit/3").status_code == 403

    def test_payment_completion_applies_on_next_request(self, client, db, premium, member, member_headers):
        assert client.get(f"/api/resources/{premium.id}/unit/10", headers=member_headers).status_code == 403
        member.payment_status = "completed"
        db.commit()
        assert client.get(f"/api/resources/{premium.id}/unit/10", headers=member_headers).status_code == 200


class TestMetadata:
    def test_detail_reports_caller_access(self, client, premium, member_headers, subscriber_headers):
        preview = client.get(f"/api/resources/{premium.id}", headers=member_headers).json()
        assert preview["available_units"] == 3
        assert preview["is_preview_mode"] is True
        full = client.get(f"/api/resources/{premium.id}", headers=subscriber_headers).json()
        assert full["available_units"] == 50
        assert full["is_preview_mode"] is False

    def test_anonymous_preview_endpoint(self, client, premium):
        body = client.get(f"/api/resources/{premium.id}/preview").json()
        assert body["available_units"] == 2
        assert body["access_level"] == "preview"

    def test_list_hides_inactive(self, client, db, settings):
        active = add_resource(db, pages=1, title="Visible")
        add_resource(db, pages=1, title="Hidden", is_active=False)
        ids = [r["id"] for r in client.get("/api/resources").json()]
        assert ids == [active.id]

    def test_inactive_is_404_everywhere(self, client, db, settings, subscriber_headers):
        hidden = add_resource(db, pages=2, is_active=False)
        assert client.get(f"/api/resources/{hidden.id}", headers=subscriber_headers).status_code == 404
        assert client.get(f"/api/resources/{hidden.id}/unit/1", headers=subscriber_headers).status_code == 404

    def test_not_ready_on_disk_is_404(self, client, db, premium, subscriber_headers):
        (storage.resource_dir(premium.id) / "unit_0007.pdf").unlink()
        assert client.get(f"/api/resources/{premium.id}", headers=subscriber_headers).status_code == 404
        assert client.get(f"/api/resources/{premium.id}/unit/1", headers=subscriber_headers).status_code == 404


class TestImages:
    def test_on_demand_then_cached(self, client, premium, member_headers, converter):
        first = client.get(f"/api/resources/{premium.id}/image/1", headers=member_headers)
        assert first.status_code == 200
        assert first.headers["content-type"] == "image/jpeg"
        assert first.content == FAKE_JPEG
        assert first.headers["x-on-demand-converted"] == "true"
        assert "x-placeholder" not in first.headers

    def test_beyond_preview_never_converts(self, client, premium, member_headers, converter):
        resp = client.get(f"/api/resources/{premium.id}/image/4", headers=member_headers)
        assert resp.status_code == 403
        assert converter.calls == 0

    def test_cached_image_served_from_cache(self, client, premium, member_headers, converter):
        storage.atomic_write_bytes(storage.raster_cache_path(premium.id, 2), b"\xff\xd8cached")
        resp = client.get(f"/api/resources/{premium.id}/image/2", headers=member_headers)
        assert resp.content == b"\xff\xd8cached"
        assert resp.headers["x-on-demand-converted"] == "false"
        assert converter.calls == 0

    def test_placeholder_flagged(self, client, premium, member_headers, converter):
        converter.fail = True
        resp = client.get(f"/api/resources/{premium.id}/image/1", headers=member_headers)
        assert resp.status_code == 200
        assert resp.headers["x-placeholder"] == "true"
        assert resp.content[:2] == b"\xff\xd8"

    def test_convert_all_is_idempotent(self, client, premium, admin_headers, converter):
        first = client.post(f"/api/resources/{premium.id}/convert-to-images", headers=admin_headers).json()
        assert first == {"converted": 50, "skipped": 0, "placeholders": 0, "method": "fake"}
        second = client.post(f"/api/resources/{premium.id}/convert-to-images", headers=admin_headers).json()
        assert second == {"converted": 0, "skipped": 50, "placeholders": 0, "method": None}
        assert converter.calls == 50

    def test_convert_all_requires_admin(self, client, premium, member_headers):
        assert client.post(f"/api/resources/{premium.id}/convert-to-images", headers=member_headers).status_code == 403


class TestPreviewStream:
    def test_holds_preview_pages(self, client, premium, member_headers):
        from io import BytesIO
        from pypdf import PdfReader

        resp = client.get(f"/api/resources/{premium.id}/preview-stream", headers=member_headers)
        assert resp.status_code == 200
        assert resp.headers["x-preview-pages"] == "3"
        assert len(PdfReader(BytesIO(resp.content)).pages) == 3


class TestUpload:
    def _upload(self, client, headers, data, **form):
        fields = {"title": "Uploaded", "is_premium": "false", "preview_units": "0"}
        fields.update({k: str(v).lower() if isinstance(v, bool) else str(v) for k, v in form.items()})
        return client.post(
            "/api/resources",
            headers=headers,
            data=fields,
            files={"file": ("doc.pdf", data, "application/pdf")},
        )

    def test_upload_counts_pages_from_document(self, client, db, admin_headers):
        resp = self._upload(client, admin_headers, make_pdf(7), is_premium=True, preview_units=2)
        assert resp.status_code == 201
        body = resp.json()
        assert body["unit_count"] == 7
        assert body["preview_units"] == 2
        assert storage.is_resource_ready(body["id"], 7)

    def test_preview_units_clamped_to_page_count(self, client, admin_headers):
        body = self._upload(client, admin_headers, make_pdf(2), is_premium=True, preview_units=9).json()
        assert body["preview_units"] == 2

    def test_premium_needs_preview_page(self, client, admin_headers):
        resp = self._upload(client, admin_headers, make_pdf(2), is_premium=True, preview_units=0)
        assert resp.status_code == 400

    def test_malformed_pdf_rejected_without_row_or_files(self, client, db, admin_headers, settings):
        resp = self._upload(client, admin_headers, b"not a pdf at all")
        assert resp.status_code == 400
        assert "error" in resp.json()
        assert db.query(Resource).count() == 0
        resources_dir = storage.storage_root() / "resources"
        assert not resources_dir.exists() or list(resources_dir.iterdir()) == []

    def test_members_cannot_upload(self, client, member_headers):
        assert self._upload(client, member_headers, make_pdf(1)).status_code == 403

    def test_toggle(self, client, premium, admin_headers):
        resp = client.patch(f"/api/resources/{premium.id}/toggle", headers=admin_headers)
        assert resp.json()["is_active"] is False
        assert client.get(f"/api/resources/{premium.id}/unit/1").status_code == 404


class TestAdminEdits:
    def test_edit_title_and_description(self, client, premium, admin_headers):
        resp = client.patch(
            f"/api/resources/{premium.id}",
            headers=admin_headers,
            json={"title": "  Second Edition ", "description": "Revised"},
        )
        assert resp.status_code == 200
        assert resp.json()["title"] == "Second Edition"
        assert resp.json()["description"] == "Revised"

        cleared = client.patch(f"/api/resources/{premium.id}", headers=admin_headers, json={"description": ""})
        assert cleared.json()["description"] is None
        assert cleared.json()["title"] == "Second Edition"

    def test_edit_rejects_blank_title(self, client, premium, admin_headers):
        resp = client.patch(f"/api/resources/{premium.id}", headers=admin_headers, json={"title": "   "})
        assert resp.status_code == 400

    def test_edit_requires_admin(self, client, premium, member_headers):
        resp = client.patch(f"/api/resources/{premium.id}", headers=member_headers, json={"title": "Mine"})
        assert resp.status_code == 403

    def test_delete_removes_row_and_files(self, client, db, premium, admin_headers, subscriber_headers):
        assert storage.resource_dir(premium.id).is_dir()
        resource_id = premium.id
        assert client.delete(f"/api/resources/{resource_id}", headers=admin_headers).status_code == 200

        db.expire_all()
        assert db.query(Resource).filter(Resource.id == resource_id).first() is None
        assert not storage.resource_dir(resource_id).exists()
        assert client.get(f"/api/resources/{resource_id}", headers=subscriber_headers).status_code == 404
        assert client.delete(f"/api/resources/{resource_id}", headers=admin_headers).status_code == 404
