"""Playlist rewriting and the preview time-box."""
import unittest

from contentgate.services import hls
from contentgate.services.preview import PlaybackAction, PreviewTimeBox, allowed_segments, byte_budget

PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXT-X-PLAYLIST-TYPE:VOD
#EXT-X-KEY:METHOD=AES-128,URI="key",IV=0x00000000000000000000000000000000
#EXTINF:10.000000,
segment000.ts
#EXTINF:10.000000,
segment001.ts
#EXTINF:10.000000,
segment002.ts
#EXTINF:4.500000,
segment003.ts
#EXT-X-ENDLIST
"""

BASE = "https://cdn.example.com/api/videos/v1/package"


class TestParse(unittest.TestCase):
    def test_entries_have_start_times(self):
        entries = hls.parse_media_entries(PLAYLIST)
        self.assertEqual([e.uri for e in entries], ["segment000.ts", "segment001.ts", "segment002.ts", "segment003.ts"])
        self.assertEqual([e.start for e in entries], [0.0, 10.0, 20.0, 30.0])
        self.assertEqual(entries[-1].duration, 4.5)


class TestRewrite(unittest.TestCase):
    def test_media_and_key_get_absolute_token_urls(self):
        out = hls.rewrite_manifest(PLAYLIST, BASE, "abc.def")
        self.assertIn(f"{BASE}/segment000.ts?token=abc.def", out)
        self.assertIn(f'URI="{BASE}/key?token=abc.def"', out)
        for line in out.splitlines():
            if line and not line.startswith("#"):
                self.assertTrue(line.startswith(BASE))

    def test_no_token(self):
        out = hls.rewrite_manifest(PLAYLIST, BASE + "/", None)
        self.assertIn(f"{BASE}/segment001.ts\n", out)

    def test_tags_kept(self):
        out = hls.rewrite_manifest(PLAYLIST, BASE, "t")
        self.assertTrue(out.startswith("#EXTM3U"))
        self.assertIn("#EXT-X-ENDLIST", out)


class TestTruncate(unittest.TestCase):
    def test_keeps_segments_starting_before_limit(self):
        text, allowed = hls.truncate_manifest(PLAYLIST, 20)
        self.assertEqual(allowed, {"segment000.ts", "segment001.ts"})
        self.assertNotIn("segment002.ts", text)
        self.assertTrue(text.rstrip().endswith("#EXT-X-ENDLIST"))
        self.assertIn("#EXT-X-KEY", text)

    def test_partial_segment_included(self):
        _, allowed = hls.truncate_manifest(PLAYLIST, 15)
        self.assertEqual(allowed, {"segment000.ts", "segment001.ts"})

    def test_limit_beyond_end_keeps_all(self):
        _, allowed = hls.truncate_manifest(PLAYLIST, 1000)
        self.assertEqual(len(allowed), 4)

    def test_allowed_segments_matches_truncation(self):
        self.assertEqual(allowed_segments(PLAYLIST, 5), {"segment000.ts"})


class TestPassthroughManifest(unittest.TestCase):
    def test_single_entry_with_duration(self):
        text = hls.passthrough_manifest("video.mp4", 95.25)
        self.assertIn("#EXTINF:95.250,", text)
        self.assertEqual(hls.media_names(text), ["video.mp4"])
        self.assertIn("#EXT-X-TARGETDURATION:96", text)

    def test_unknown_duration(self):
        text = hls.passthrough_manifest("video.mp4", 0)
        self.assertIn("#EXTINF:3600.000,", text)


class TestPreviewTimeBox(unittest.TestCase):
    def setUp(self):
        self.box = PreviewTimeBox(limit_seconds=20)

    def test_seek_clamped(self):
        self.assertEqual(self.box.clamp_seek(45), 20)
        self.assertEqual(self.box.clamp_seek(12.5), 12.5)
        self.assertEqual(self.box.clamp_seek(-3), 0.0)

    def test_pause_at_limit(self):
        self.assertEqual(self.box.on_time_update(19.9), PlaybackAction.CONTINUE)
        self.assertEqual(self.box.on_time_update(20), PlaybackAction.PAUSE_AND_UPSELL)

    def test_player_config(self):
        config = self.box.player_config()
        self.assertEqual(config["previewDuration"], 20)
        self.assertTrue(config["clampSeek"])
        self.assertEqual(config["onLimit"], "pause_and_upsell")


class TestByteBudget(unittest.TestCase):
    def test_proportional(self):
        self.assertEqual(byte_budget(1000, 100.0, 20), 200)

    def test_rounds_up(self):
        self.assertEqual(byte_budget(1001, 100.0, 20), 201)

    def test_limit_past_duration_allows_everything(self):
        self.assertEqual(byte_budget(1000, 10.0, 20), 1000)

    def test_unknown_duration_share(self):
        self.assertEqual(byte_budget(1000, 0.0, 20), 100)

    def test_empty_file(self):
        self.assertEqual(byte_budget(0, 10.0, 5), 0)
