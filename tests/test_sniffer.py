"""
Tests for body classification of upstream responses.
"""
from streamgate.proxy.sniffer import MediaKind, looks_like_playlist, media_type_for, sniff


def test_declared_hls_type_wins():
    assert sniff(b"\x47\x40\x00", "application/vnd.apple.mpegurl") is MediaKind.PLAYLIST
    assert sniff(b"", "audio/x-mpegurl; charset=utf-8") is MediaKind.PLAYLIST


def test_m3u8_url_is_playlist():
    assert sniff(b"garbage", None, "https://cdn.example/live/index.m3u8?token=1") is MediaKind.PLAYLIST


def test_disguised_playlist_detected_by_header():
    body = b"#EXTM3U\n#EXT-X-VERSION:3\n"
    assert sniff(body, "text/css", "https://zekonew.kiko2.ru/zeko/premium325/mono.css") is MediaKind.PLAYLIST


def test_playlist_header_after_bom():
    assert sniff(b"\xef\xbb\xbf#EXTM3U\n") is MediaKind.PLAYLIST


def test_transport_stream_sync_byte():
    segment = bytes([0x47]) + b"\x00" * 187
    assert sniff(segment, "image/png") is MediaKind.TRANSPORT_STREAM


def test_fragmented_mp4():
    assert sniff(b"\x00\x00\x00\x18ftypmp42") is MediaKind.FRAGMENTED_MP4


def test_unknown_and_empty():
    assert sniff(b"") is MediaKind.UNKNOWN
    assert sniff(b"<html>blocked</html>", "text/html") is MediaKind.UNKNOWN
    assert sniff(None) is MediaKind.UNKNOWN


def test_invalid_url_never_raises():
    assert sniff(b"\x47", None, "http://[::1") is MediaKind.TRANSPORT_STREAM


def test_media_type_mapping():
    assert media_type_for(MediaKind.PLAYLIST) == "application/vnd.apple.mpegurl"
    assert media_type_for(MediaKind.TRANSPORT_STREAM, "image/png") == "video/mp2t"
    assert media_type_for(MediaKind.FRAGMENTED_MP4) == "video/mp4"
    assert media_type_for(MediaKind.UNKNOWN, "audio/aac") == "audio/aac"
    assert media_type_for(MediaKind.UNKNOWN, "image/jpeg") == "application/octet-stream"
    assert media_type_for(MediaKind.UNKNOWN) == "application/octet-stream"


def test_looks_like_playlist():
    assert looks_like_playlist("#EXTM3U\n")
    assert looks_like_playlist("#EXT-X-TARGETDURATION:4\nseg.ts")
    assert not looks_like_playlist("<!DOCTYPE html>")
