from datetime import datetime
from io import BytesIO
from urllib.parse import parse_qs, urlparse

import pytest
from PIL import Image

from contentgate.models.user_session import UserSession
from contentgate.models.video import Video
from contentgate.services import hls, storage, transcoder
from tests.test_transcoder import FakeFFmpeg

KEY = bytes(range(16))


def add_video(db, state="segmented", is_premium=True, preview_duration=20, duration=40.0, size=1000):
    video = Video(
        title="Lecture",
        source_format="mp4",
        content_type="video/mp4",
        is_premium=is_premium,
        preview_duration=preview_duration,
        duration_seconds=duration,
        package_state=state,
        is_encrypted=state == "segmented",
    )
    db.add(video)
    db.commit()
    db.refresh(video)
    package = storage.video_package_dir(video.id)
    package.mkdir(parents=True)
    (package / storage.KEY_FILE).write_bytes(KEY)
    if state == "segmented":
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10", '#EXT-X-KEY:METHOD=AES-128,URI="key"']
        for i in range(4):
            (package / f"segment{i:03d}.ts").write_bytes(b"ts%d" % i)
            lines += ["#EXTINF:10.000000,", f"segment{i:03d}.ts"]
        lines.append("#EXT-X-ENDLIST")
        (package / storage.HLS_MANIFEST).write_text("\n".join(lines) + "\n")
    else:
        (package / storage.PASSTHROUGH_MEDIA).write_bytes(bytes(i % 256 for i in range(size)))
        (package / storage.HLS_MANIFEST).write_text(hls.passthrough_manifest(storage.PASSTHROUGH_MEDIA, duration))
    return video


def _token(client, video_id, headers=None):
    resp = client.get(f"/api/videos/{video_id}/access-token", headers=headers or {})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _package(client, video_id, name, token=None, headers=None):
    params = {"token": token} if token else None
    return client.get(f"/api/videos/{video_id}/package/{name}", params=params, headers=headers or {})


@pytest.fixture
def segmented(db, settings):
    return add_video(db)


@pytest.fixture
def passthrough(db, settings):
    return add_video(db, state="passthrough", duration=100.0, size=1000)


class TestAccessToken:
    def test_member_gets_preview_config(self, client, db, segmented, member_headers):
        body = _token(client, segmented.id, member_headers)
        assert body["isPreviewOnly"] is True
        assert body["previewDuration"] == 20
        assert body["expiresIn"] == 4 * 60 * 60
        assert body["playerConfig"]["clampSeek"] is True
        assert body["playerConfig"]["pauseAtLimit"] is True
        assert "/package/index.m3u8?token=" in body["streamUrl"]
        db.expire_all()
        assert db.query(Video).filter(Video.id == segmented.id).one().views == 1

    def test_subscriber_gets_full(self, client, segmented, subscriber_headers):
        body = _token(client, segmented.id, subscriber_headers)
        assert body["isPreviewOnly"] is False
        assert body["playerConfig"]["clampSeek"] is False

    def test_pending_video_is_404(self, client, db, settings, subscriber_headers):
        video = Video(title="Soon", source_format="mp4")
        db.add(video)
        db.commit()
        assert client.get(f"/api/videos/{video.id}/access-token", headers=subscriber_headers).status_code == 404


class TestSegmentedServing:
    def test_preview_manifest_is_cut_and_rewritten(self, client, segmented, member_headers):
        token = _token(client, segmented.id, member_headers)["token"]
        resp = _package(client, segmented.id, "index.m3u8", token)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        text = resp.text
        media = [line for line in text.splitlines() if line and not line.startswith("#")]
        assert len(media) == 2
        for url in media:
            parsed = urlparse(url)
            assert parsed.scheme in ("http", "https")
            assert parse_qs(parsed.query)["token"] == [token]
        assert f"/api/videos/{segmented.id}/package/key?token=" in text
        assert text.rstrip().endswith("#EXT-X-ENDLIST")

    def test_preview_segments_enforced(self, client, segmented, member_headers):
        token = _token(client, segmented.id, member_headers)["token"]
        assert _package(client, segmented.id, "segment001.ts", token).status_code == 200
        denied = _package(client, segmented.id, "segment002.ts", token)
        assert denied.status_code == 403
        assert denied.json()["previewDuration"] == 20

    def test_subscriber_gets_whole_manifest(self, client, segmented, subscriber_headers):
        token = _token(client, segmented.id, subscriber_headers)["token"]
        text = _package(client, segmented.id, "index.m3u8", token).text
        assert text.count("segment") == 4
        resp = _package(client, segmented.id, "segment003.ts", token)
        assert resp.status_code == 200
        assert resp.content == b"ts3"

    def test_key_served_by_alias_only(self, client, segmented, subscriber_headers):
        token = _token(client, segmented.id, subscriber_headers)["token"]
        key = _package(client, segmented.id, "key", token)
        assert key.status_code == 200
        assert key.content == KEY
        assert _package(client, segmented.id, "encryption.key", token).status_code == 404

    def test_session_auth_without_token(self, client, segmented, subscriber_headers):
        resp = _package(client, segmented.id, "segment003.ts", headers=subscriber_headers)
        assert resp.status_code == 200

    def test_bad_token_rejected(self, client, segmented):
        assert _package(client, segmented.id, "index.m3u8", "not-a-token").status_code == 401

    def test_token_for_other_video_rejected(self, client, db, segmented, subscriber_headers):
        other = add_video(db)
        token = _token(client, other.id, subscriber_headers)["token"]
        assert _package(client, segmented.id, "index.m3u8", token).status_code == 401

    def test_revoked_session_ends_stream(self, client, db, segmented, subscriber_headers):
        token = _token(client, segmented.id, subscriber_headers)["token"]
        login = db.query(UserSession).one()
        login.revoked_at = datetime.utcnow()
        db.commit()
        resp = _package(client, segmented.id, "segment000.ts", token)
        assert resp.status_code == 401
        assert resp.json()["sessionTerminated"] is True

    def test_entitlement_reread_per_request(self, client, db, segmented, member, member_headers):
        token = _token(client, segmented.id, member_headers)["token"]
        assert _package(client, segmented.id, "segment003.ts", token).status_code == 403
        member.payment_status = "completed"
        db.commit()
        assert _package(client, segmented.id, "segment003.ts", token).status_code == 200


class TestPassthroughServing:
    def test_subscriber_full_file(self, client, passthrough, subscriber_headers):
        token = _token(client, passthrough.id, subscriber_headers)["token"]
        resp = _package(client, passthrough.id, "video.mp4", token)
        assert resp.status_code == 200
        assert len(resp.content) == 1000

    def test_range_request(self, client, passthrough, subscriber_headers):
        resp = client.get(
            f"/api/videos/{passthrough.id}/package/video.mp4",
            headers={**subscriber_headers, "Range": "bytes=100-199"},
        )
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 100-199/1000"
        assert resp.content == bytes(i % 256 for i in range(100, 200))

    def test_preview_byte_budget(self, client, passthrough, member_headers):
        # 1000 bytes over 100 s with a 20 s preview: 200 bytes
        crossing = client.get(
            f"/api/videos/{passthrough.id}/package/video.mp4",
            headers={**member_headers, "Range": "bytes=150-499"},
        )
        assert crossing.status_code == 206
        assert crossing.headers["content-range"] == "bytes 150-199/1000"
        assert len(crossing.content) == 50

        beyond = client.get(
            f"/api/videos/{passthrough.id}/package/video.mp4",
            headers={**member_headers, "Range": "bytes=300-"},
        )
        assert beyond.status_code == 403

        no_range = client.get(f"/api/videos/{passthrough.id}/package/video.mp4", headers=member_headers)
        assert no_range.status_code == 206
        assert no_range.headers["content-range"] == "bytes 0-199/1000"

    def test_unsatisfiable_range(self, client, passthrough, subscriber_headers):
        resp = client.get(
            f"/api/videos/{passthrough.id}/package/video.mp4",
            headers={**subscriber_headers, "Range": "bytes=5000-"},
        )
        assert resp.status_code == 416

    def test_passthrough_has_no_key(self, client, passthrough, subscriber_headers):
        assert _package(client, passthrough.id, "key", headers=subscriber_headers).status_code == 404


class TestAdmin:
    def test_upload_packages_in_background(self, client, db, admin_headers, transcode_pool, monkeypatch):
        monkeypatch.setattr(transcoder, "_run", FakeFFmpeg())
        resp = client.post(
            "/api/videos",
            headers=admin_headers,
            data={"title": "Intro", "is_premium": "true", "preview_duration": "30"},
            files={"file": ("intro.mp4", b"\x00\x00\x00\x18ftypmp42" * 64, "video/mp4")},
        )
        assert resp.status_code == 202
        video_id = resp.json()["id"]
        transcode_pool.shutdown(wait=True)

        db.expire_all()
        video = db.query(Video).filter(Video.id == video_id).one()
        assert video.package_state == "segmented"
        assert video.preview_duration == 30
        assert video.duration_seconds == 42.5
        assert (storage.video_package_dir(video_id) / "index.m3u8").is_file()

    def test_upload_rejects_unknown_format(self, client, db, admin_headers, settings):
        resp = client.post(
            "/api/videos",
            headers=admin_headers,
            data={"title": "Clip"},
            files={"file": ("clip.gif", b"GIF89a", "image/gif")},
        )
        assert resp.status_code == 400
        assert db.query(Video).count() == 0
        videos_dir = storage.storage_root() / "videos"
        assert not videos_dir.exists() or list(videos_dir.iterdir()) == []

    def test_toggle_hides_video(self, client, segmented, admin_headers, subscriber_headers):
        assert client.patch(f"/api/videos/{segmented.id}/toggle", headers=admin_headers).json()["is_active"] is False
        assert client.get(f"/api/videos/{segmented.id}/access-token", headers=subscriber_headers).status_code == 404
        assert client.get("/api/videos").json() == []

    def test_thumbnail_missing(self, client, segmented):
        assert client.get(f"/api/videos/{segmented.id}/thumbnail").status_code == 404


def _png(size=(64, 36)) -> bytes:
    buf = BytesIO()
    Image.new("RGBA", size, (200, 30, 30, 255)).save(buf, format="PNG")
    return buf.getvalue()


class TestAdminLifecycle:
    def test_delete_removes_row_and_files(self, client, db, segmented, admin_headers, subscriber_headers):
        video_id = segmented.id
        assert storage.video_dir(video_id).is_dir()
        assert client.delete(f"/api/videos/{video_id}", headers=admin_headers).status_code == 200

        db.expire_all()
        assert db.query(Video).filter(Video.id == video_id).first() is None
        assert not storage.video_dir(video_id).exists()
        assert client.get(f"/api/videos/{video_id}/access-token", headers=subscriber_headers).status_code == 404

    def test_delete_refused_while_packaging(self, client, segmented, admin_headers, transcode_pool, monkeypatch):
        monkeypatch.setattr(transcode_pool, "is_busy", lambda video_id: True)
        assert client.delete(f"/api/videos/{segmented.id}", headers=admin_headers).status_code == 409
        assert storage.video_dir(segmented.id).is_dir()

    def test_delete_requires_admin(self, client, segmented, member_headers):
        assert client.delete(f"/api/videos/{segmented.id}", headers=member_headers).status_code == 403

    def test_custom_thumbnail_upload_and_removal(self, client, segmented, admin_headers):
        resp = client.post(
            f"/api/videos/{segmented.id}/thumbnail",
            headers=admin_headers,
            files={"thumbnail": ("cover.png", _png(), "image/png")},
        )
        assert resp.status_code == 200
        assert resp.json()["has_thumbnail"] is True
        assert resp.json()["custom_thumbnail"] is True

        served = client.get(f"/api/videos/{segmented.id}/thumbnail")
        assert served.status_code == 200
        assert served.content[:2] == b"\xff\xd8"
        assert Image.open(BytesIO(served.content)).size == (64, 36)

        removed = client.delete(f"/api/videos/{segmented.id}/thumbnail", headers=admin_headers)
        assert removed.json()["has_thumbnail"] is False
        assert client.get(f"/api/videos/{segmented.id}/thumbnail").status_code == 404

    def test_thumbnail_rejects_other_types(self, client, segmented, admin_headers):
        gif = client.post(
            f"/api/videos/{segmented.id}/thumbnail",
            headers=admin_headers,
            files={"thumbnail": ("cover.gif", b"GIF89a", "image/gif")},
        )
        assert gif.status_code == 400
        fake_png = client.post(
            f"/api/videos/{segmented.id}/thumbnail",
            headers=admin_headers,
            files={"thumbnail": ("cover.png", b"not really a png", "image/png")},
        )
        assert fake_png.status_code == 400
        assert not storage.video_thumbnail_path(segmented.id).exists()
