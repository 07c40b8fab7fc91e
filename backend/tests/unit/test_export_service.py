"""
Unit tests for M3U and JSON playlist exports.
"""
import json

from export_service import generate_json, generate_m3u, to_number_if_numeric
from identifier_resolver import IdentifierStrategy, MetadataKey, extract
from m3u_parser import parse_m3u
from tests.fixtures.factories import create_channel, create_playlist


MAPPING = {"name": "BBC One HD", "logo": "http://logo/mapped.png", "tvgId": "bbc1.uk", "extGrp": "UK"}


class TestToNumber:
    def test_canonical_integers(self):
        assert to_number_if_numeric("42") == 42
        assert to_number_if_numeric("0") == 0
        assert to_number_if_numeric("-3") == -3

    def test_leading_zero_and_text_stay_strings(self):
        assert to_number_if_numeric("007") == "007"
        assert to_number_if_numeric("bbc1") == "bbc1"
        assert to_number_if_numeric(None) is None


class TestGenerateM3U:
    def test_mapping_overrides_display_fields(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(
            test_session, playlist.id, name="BBC One", category_id="News", tvg_id="raw.id", mapping=MAPPING,
        )
        content = generate_m3u([channel])
        assert content.startswith("#EXTM3U")
        assert 'tvg-id="bbc1.uk"' in content
        assert 'tvg-logo="http://logo/mapped.png"' in content
        assert 'group-title="UK"' in content
        assert ",BBC One HD\n#EXTGRP:UK\n" in content
        assert channel.stream_url in content

    def test_without_mappings(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="BBC One", category_id="News", mapping=MAPPING)
        content = generate_m3u([channel], apply_mappings=False)
        assert ",BBC One\n" in content
        assert "#EXTGRP:News" in content

    def test_epg_url_in_header(self, test_session):
        assert generate_m3u([], epg_url="http://g/epg.xml").startswith('#EXTM3U url-tvg="http://g/epg.xml"')

    def test_export_parses_back_to_same_identity_keys(self, test_session):
        playlist = create_playlist(test_session)
        channels = [
            create_channel(test_session, playlist.id, name="A", tvg_id="a.1", category_id="News", sort_order=0),
            create_channel(test_session, playlist.id, name="B, the second", tvg_id="b.2", sort_order=1),
        ]
        parsed = parse_m3u(generate_m3u(channels))
        for strategy in (IdentifierStrategy.name(), IdentifierStrategy.metadata(MetadataKey.TVG_ID)):
            assert [extract(r, strategy) for r in parsed.records] == [extract(c, strategy) for c in channels]


class TestGenerateJson:
    def test_fields(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(
            test_session, playlist.id, name="BBC One", stream_id="101", tvg_name="BBC 1",
            tvg_chno="7", category_id="News",
        )
        items = json.loads(generate_json([channel], IdentifierStrategy.metadata(MetadataKey.TVG_CHNO)))
        assert items == [{
            "channelName": "BBC One",
            "channelId": 7,
            "streamId": "101",
            "tvgName": "BBC 1",
            "extGrp": "News",
            "tvgChno": 7,
        }]

    def test_mapped_channel_exports_mapped_tvg_id(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="BBC One", tvg_id="raw", mapping=MAPPING)
        item = json.loads(generate_json([channel], IdentifierStrategy.name()))[0]
        assert item["channelId"] == "BBC One"
        assert item["channelName"] == "BBC One HD"
        assert item["tvgId"] == "bbc1.uk"
        assert item["extGrp"] == "UK"
