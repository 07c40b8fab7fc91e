"""
Unit tests for channel mappings, carry-forward and mapping copy.
"""
import json

from channel_mappings import ChannelMapping, carry_forward, clear_mapping, copy_mappings, set_mapping
from models import Channel
from tests.fixtures.factories import create_channel, create_playlist, make_record


MAPPING = {"name": "BBC One HD", "logo": "http://logo/bbc.png", "tvgId": "bbc1.uk", "extGrp": "UK"}


class TestChannelMapping:
    def test_round_trip_json(self):
        mapping = ChannelMapping.from_dict(MAPPING)
        assert ChannelMapping.from_json(mapping.to_json()) == mapping

    def test_malformed_json_is_no_mapping(self):
        assert ChannelMapping.from_json("{not json") is None
        assert ChannelMapping.from_json("[1, 2]") is None
        assert ChannelMapping.from_json(json.dumps({"logo": "x"})) is None
        assert ChannelMapping.from_json(None) is None

    def test_numeric_tvg_id_becomes_text(self):
        mapping = ChannelMapping.from_dict({"name": "A", "tvgId": 42})
        assert mapping.tvg_id == "42"

    def test_channel_reads_malformed_blob_as_unmapped(self):
        channel = Channel(name="A", stream_id="1", channel_mapping="garbage")
        assert channel.get_mapping() is None


class TestCarryForward:
    def test_source_values_win_without_overrides(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="Old", stream_url="http://x/old.ts")
        record = make_record("New", url="http://x/new.ts", group="News", tvg_id="n1")

        carry_forward([(channel, record)])

        assert channel.name == "New"
        assert channel.stream_url == "http://x/new.ts"
        assert channel.category_id == "News"
        assert channel.tvg_id == "n1"
        assert channel.get_mapping() is None

    def test_mapping_survives(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="Y", mapping=MAPPING)
        kept = carry_forward([(channel, make_record("Y"))])
        assert kept == 1
        assert channel.get_mapping().name == "BBC One HD"

    def test_stored_mapping_kept_verbatim(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="Y")
        blob = json.dumps({"name": "Y HD", "logo": "http://logo/y.png", "tvgId": "", "note": "kept"})
        channel.channel_mapping = blob

        carry_forward([(channel, make_record("Y", group="News"))])

        assert channel.channel_mapping == blob
        assert channel.category_id == "News"

    def test_malformed_mapping_is_cleared(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="Y")
        channel.channel_mapping = "{broken"
        carry_forward([(channel, make_record("Y"))])
        assert channel.channel_mapping is None

    def test_manual_flags_govern_their_own_field_only(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(
            test_session, playlist.id, name="Y",
            is_operational=False, is_operational_manual=True,
            has_archive=False, has_archive_manual=False,
        )
        record = make_record("Y", catchup="default", catchup_days="7")

        carry_forward([(channel, record)])

        assert channel.is_operational is False
        assert channel.is_operational_manual is True
        # Not pinned, so the source decides
        assert channel.has_archive is True

    def test_pinned_archive_survives_source_without_catchup(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(
            test_session, playlist.id, name="Y", has_archive=True, has_archive_manual=True,
        )
        carry_forward([(channel, make_record("Y"))])
        assert channel.has_archive is True
        assert channel.is_operational is True


class TestSetAndClear:
    def test_set_and_clear(self, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id)
        mapping = ChannelMapping.from_dict(MAPPING)

        assert set_mapping(test_session, playlist.id, channel.id, mapping) is channel
        assert channel.get_mapping() == mapping
        assert clear_mapping(test_session, playlist.id, channel.id) is channel
        assert channel.channel_mapping is None

    def test_channel_of_other_playlist_is_not_found(self, test_session):
        playlist = create_playlist(test_session)
        other = create_playlist(test_session)
        channel = create_channel(test_session, other.id)
        assert set_mapping(test_session, playlist.id, channel.id, ChannelMapping(name="A")) is None


class TestCopyMappings:
    def test_copies_by_identity_key(self, test_session):
        source = create_playlist(test_session)
        target = create_playlist(test_session)
        create_channel(test_session, source.id, name="BBC One", mapping=MAPPING)
        create_channel(test_session, source.id, name="Gone", mapping={"name": "Gone HD"})
        create_channel(test_session, source.id, name="Unmapped")
        hit = create_channel(test_session, target.id, name="BBC One")

        result = copy_mappings(test_session, source.id, target.id)

        assert result.mapped == 1
        assert result.not_found == 1
        assert result.not_found_channels == [{"channelId": "Gone", "channelName": "Gone"}]
        assert hit.get_mapping().name == "BBC One HD"

    def test_each_playlist_uses_its_own_strategy(self, test_session):
        source = create_playlist(test_session, identifier_source="metadata", identifier_metadata_key="tvg-id")
        target = create_playlist(
            test_session, identifier_source="stream-url", identifier_regex=r"/(\w+)\.ts$",
        )
        create_channel(test_session, source.id, name="Anything", tvg_id="bbc1", mapping=MAPPING)
        hit = create_channel(test_session, target.id, name="Other", stream_url="http://p/live/bbc1.ts")

        result = copy_mappings(test_session, source.id, target.id)

        assert result.mapped == 1
        assert hit.get_mapping().tvg_id == "bbc1.uk"
