"""
Tests for utils.py
"""

import os
import tempfile
import unittest

from utils import (
    compression_settings,
    content_type_for,
    detect_platform,
    format_timestamp,
    parse_timestamp,
    remove_file,
    resolve_upload,
    validate_video_url,
)


class TimestampTest(unittest.TestCase):
    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp("00:00:30"), 30)
        self.assertEqual(parse_timestamp("01:02:03"), 3723)
        self.assertEqual(parse_timestamp("9:00:00"), 32400)

    def test_parse_timestamp_rejects_bad_values(self):
        for value in ("", "00:60:00", "24:00:00", "1:2:3", "00:00"):
            with self.assertRaises(ValueError):
                parse_timestamp(value)

    def test_format_timestamp(self):
        self.assertEqual(format_timestamp(3723), "01:02:03")
        self.assertEqual(format_timestamp(0), "00:00:00")


class PlatformTest(unittest.TestCase):
    def test_detect_platform(self):
        self.assertEqual(detect_platform("https://www.youtube.com/watch?v=abc"), "youtube")
        self.assertEqual(detect_platform("https://youtu.be/abc"), "youtube")
        self.assertEqual(detect_platform("https://m.facebook.com/watch/?v=1"), "facebook")
        self.assertEqual(detect_platform("https://fb.watch/xyz"), "facebook")
        self.assertEqual(detect_platform("https://www.instagram.com/reel/abc/"), "instagram")

    def test_detect_platform_matches_host_only(self):
        self.assertIsNone(detect_platform("https://notyoutube.com/watch?v=abc"))
        self.assertIsNone(detect_platform("https://example.com/?next=youtube.com"))

    def test_validate_video_url(self):
        self.assertEqual(validate_video_url("https://youtube.com/watch?v=abc"), "youtube")
        with self.assertRaises(ValueError):
            validate_video_url("ftp://youtube.com/video")
        with self.assertRaises(ValueError):
            validate_video_url("https://vimeo.com/1")


class FileHelpersTest(unittest.TestCase):
    def test_content_type_for(self):
        self.assertEqual(content_type_for("/x/video.mp4"), "video/mp4")
        self.assertEqual(content_type_for("/x/VIDEO.MOV"), "video/quicktime")
        self.assertEqual(content_type_for("/x/audio.mp3"), "audio/mpeg")
        self.assertEqual(content_type_for("/x/clip.gif"), "image/gif")
        self.assertEqual(content_type_for("/x/blob.bin"), "application/octet-stream")

    def test_compression_settings(self):
        self.assertEqual(compression_settings("high"), (18, "slow"))
        self.assertEqual(compression_settings("low"), (28, "fast"))
        self.assertEqual(compression_settings("unknown"), (23, "medium"))

    def test_resolve_upload(self):
        file_id = "b" * 64
        with tempfile.TemporaryDirectory() as temp_dir:
            self.assertIsNone(resolve_upload(file_id, temp_dir))
            path = os.path.join(temp_dir, f"{file_id}.mp4")
            with open(path, "wb") as f:
                f.write(b"data")
            self.assertEqual(resolve_upload(file_id, temp_dir), path)
            self.assertIsNone(resolve_upload("../" + file_id, temp_dir))

    def test_remove_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "out.mp4")
            with open(path, "wb") as f:
                f.write(b"data")
            self.assertTrue(remove_file(path))
            self.assertFalse(remove_file(path))
            self.assertFalse(remove_file(None))
