"""Tests for HLS playlist parsing and playlist URL rules.

WHY: The chunk watermark and the finalization check are only as good as
the chunk parser; a parser that misreads timestamped chunk names or
throws on junk would stall or truncate every capture.

HOW: Pure-function tests over small hand-written playlists and URLs.

RULES:
- get_chunk_indexes must never raise
- Returned indexes are exactly the chunk tokens present in the text
"""

from __future__ import annotations

import pytest

from space_capture.core.playlist import (
    get_chunk_indexes,
    get_chunk_prefix,
    get_master_playlist_url,
    resolve_final_playlist_url,
)

from conftest import DYNAMIC_URL, FINAL_URL, MASTER_URL, playlist_text


class TestGetChunkIndexes:
    def test_timestamped_chunk_names(self):
        assert get_chunk_indexes(playlist_text(1, 2, 3)) == [1, 2, 3]

    def test_plain_chunk_names(self):
        text = "#EXTM3U\n#EXTINF:3.0,\nchunk_7.aac\n#EXTINF:3.0,\nchunk_8.aac\n"
        assert get_chunk_indexes(text) == [7, 8]

    def test_order_and_duplicates_kept(self):
        text = "chunk_5.aac\nchunk_3.aac\nchunk_5.aac\n"
        assert get_chunk_indexes(text) == [5, 3, 5]

    def test_non_chunk_tokens_ignored(self):
        text = "#EXTM3U\n#EXT-X-MEDIA-SEQUENCE:12\nsegment_4.aac\nchunk_x.aac\n"
        assert get_chunk_indexes(text) == []

    @pytest.mark.parametrize("text", [None, "", "   ", "not a playlist at all", 42])
    def test_never_raises(self, text):
        assert get_chunk_indexes(text) == []

    def test_result_is_subset_of_text(self):
        text = playlist_text(10, 11, 12)
        for index in get_chunk_indexes(text):
            assert "_{}_a.aac".format(index) in text


class TestPlaylistUrls:
    def test_dynamic_to_master(self):
        assert get_master_playlist_url(DYNAMIC_URL) == MASTER_URL

    def test_replay_to_master(self):
        replay = FINAL_URL + "?type=replay"
        assert get_master_playlist_url(replay) == MASTER_URL

    def test_chunk_prefix(self):
        assert get_chunk_prefix(MASTER_URL) == MASTER_URL.rsplit("/", 1)[0] + "/"

    def test_resolve_relative_entry(self):
        master = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=65000\nplaylist_16798.m3u8\n"
        assert resolve_final_playlist_url(MASTER_URL, master) == FINAL_URL

    def test_resolve_absolute_path_entry(self):
        master = "#EXTM3U\n/Transcoding/v1/hls/abc/final.m3u8?x=1\n"
        assert (
            resolve_final_playlist_url(MASTER_URL, master)
            == "https://prod-fastly-us-east-1.video.pscp.tv/Transcoding/v1/hls/abc/final.m3u8?x=1"
        )

    def test_resolve_full_url_entry(self):
        master = "#EXTM3U\nhttps://cdn.example.com/final.m3u8\n"
        assert resolve_final_playlist_url(MASTER_URL, master) == "https://cdn.example.com/final.m3u8"

    def test_resolve_none_without_entry(self):
        assert resolve_final_playlist_url(MASTER_URL, "#EXTM3U\n#EXT-X-ENDLIST\n") is None
        assert resolve_final_playlist_url(MASTER_URL, "") is None
