"""
Constants for the streaming gateway.
"""

# Content types
HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
TS_CONTENT_TYPE = "video/mp2t"
MP4_CONTENT_TYPE = "video/mp4"
BINARY_CONTENT_TYPE = "application/octet-stream"
JSON_CONTENT_TYPE = "application/json"

# HLS markers
HLS_MIME_MARKER = "mpegurl"
PLAYLIST_EXTENSION = ".m3u8"
PLAYLIST_HEADER = "#EXTM3U"
ENDLIST_TAG = "#EXT-X-ENDLIST"

# Tags whose URI attribute points at a key rather than media
KEY_URI_TAGS = ("#EXT-X-KEY", "#EXT-X-SESSION-KEY")

# MPEG-TS sync byte
TS_SYNC_BYTE = 0x47

# Cache-Control values per resource kind
PLAYLIST_CACHE_CONTROL = "no-store, no-cache, must-revalidate"
KEY_CACHE_CONTROL = "private, max-age=30"
SEGMENT_CACHE_CONTROL = "public, max-age=300"
STREAM_CACHE_CONTROL = "no-store"

# Browser identity presented to upstreams
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
STB_USER_AGENT = (
    "Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 "
    "(KHTML, like Gecko) MAG200 stbapp ver: 2 rev: 250 Safari/533.3"
)

# CORS headers attached to every response
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Range, Content-Type, X-Request-ID, Authorization",
    "Access-Control-Expose-Headers": "Content-Length, Content-Range",
    "Access-Control-Max-Age": "86400",
}

# Fetch chain stage names
STAGE_DIRECT = "direct"
