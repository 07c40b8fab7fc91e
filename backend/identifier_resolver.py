"""
Channel identity resolution.

A playlist chooses how its channels are recognised across syncs: by display
name, by a regex capture taken from the stream URL, or by one of a closed set
of metadata attributes. The same resolver is used when diffing a resync,
copying mappings between playlists, matching JSON imports and when the
channel list is shown to the operator, so extract() must stay a pure function
of (record, strategy).
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Mapping, Optional, Protocol

from sync_errors import ValidationError

logger = logging.getLogger(__name__)


class MetadataKey(Enum):
    """Attribute names a playlist may use as its identity source."""
    TVG_ID = "tvg-id"
    TVG_NAME = "tvg-name"
    TVG_LOGO = "tvg-logo"
    GROUP_TITLE = "group-title"
    TVG_REC = "tvg-rec"
    TVG_CHNO = "tvg-chno"
    TIMESHIFT = "timeshift"
    CATCHUP = "catchup"
    CATCHUP_DAYS = "catchup-days"
    CATCHUP_SOURCE = "catchup-source"
    CATCHUP_CORRECTION = "catchup-correction"
    CUID = "cuid"
    XUI_ID = "xui-id"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["MetadataKey"]:
        """Look up a key by attribute name, case-insensitively. Unknown names return None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class StrategyKind(Enum):
    NAME = "channel-name"
    STREAM_URL_REGEX = "stream-url"
    METADATA = "metadata"


class Identifiable(Protocol):
    """Anything the resolver can key: parsed source records and persisted rows alike."""
    identity_hint: str
    display_name: str
    stream_ref: str
    attributes: Mapping[str, str]


@dataclass(frozen=True)
class IdentifierStrategy:
    kind: StrategyKind = StrategyKind.NAME
    pattern: Optional[str] = None
    metadata_key: Optional[MetadataKey] = None

    @classmethod
    def name(cls) -> "IdentifierStrategy":
        return cls(StrategyKind.NAME)

    @classmethod
    def stream_url_regex(cls, pattern: str) -> "IdentifierStrategy":
        return cls(StrategyKind.STREAM_URL_REGEX, pattern=pattern)

    @classmethod
    def metadata(cls, key: MetadataKey) -> "IdentifierStrategy":
        return cls(StrategyKind.METADATA, metadata_key=key)

    @classmethod
    def from_config(
        cls,
        source: Optional[str],
        regex: Optional[str] = None,
        metadata_key: Optional[str] = None,
    ) -> "IdentifierStrategy":
        """
        Build a strategy from stored playlist configuration.

        Stored configuration was validated on write; anything incomplete
        here degrades to the name strategy.
        """
        if source == StrategyKind.STREAM_URL_REGEX.value and regex:
            return cls.stream_url_regex(regex)
        if source == StrategyKind.METADATA.value:
            key = MetadataKey.parse(metadata_key)
            if key is not None:
                return cls.metadata(key)
        return cls.name()

    @classmethod
    def for_playlist(cls, playlist) -> "IdentifierStrategy":
        return cls.from_config(
            playlist.identifier_source,
            playlist.identifier_regex,
            playlist.identifier_metadata_key,
        )


def validate_identifier_config(
    source: Optional[str],
    regex: Optional[str] = None,
    metadata_key: Optional[str] = None,
) -> None:
    """Raise ValidationError when an identifier configuration cannot be used."""
    valid_sources = [k.value for k in StrategyKind]
    if source not in valid_sources:
        raise ValidationError(
            f"identifierSource must be one of {', '.join(valid_sources)}"
        )
    if source == StrategyKind.STREAM_URL_REGEX.value:
        if not regex:
            raise ValidationError("identifierRegex is required for the stream-url strategy")
        try:
            re.compile(regex)
        except re.error as e:
            raise ValidationError(f"Invalid identifierRegex: {e}")
    if source == StrategyKind.METADATA.value and MetadataKey.parse(metadata_key) is None:
        raise ValidationError(f"Unknown identifierMetadataKey: {metadata_key!r}")


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        logger.warning("[IDENTIFIER] Ignoring invalid identifier regex %r", pattern)
        return None


def extract(record: Identifiable, strategy: IdentifierStrategy) -> str:
    """Return the identity key of a record under the given strategy."""
    name = record.display_name or ""

    if strategy.kind is StrategyKind.STREAM_URL_REGEX:
        compiled = _compile(strategy.pattern or "")
        if compiled is None or compiled.groups < 1:
            return name
        match = compiled.search(record.stream_ref or "")
        if match and match.group(1):
            return match.group(1)
        return name

    if strategy.kind is StrategyKind.METADATA and strategy.metadata_key is not None:
        value = (record.attributes or {}).get(strategy.metadata_key.value)
        if value:
            return value
        if strategy.metadata_key is MetadataKey.XUI_ID:
            return record.identity_hint or name
        return name

    return name


def generate_regex(sample_url: str, identifier: str) -> str:
    """
    Build a pattern that captures ``identifier`` out of URLs shaped like ``sample_url``.

    The identifier's last occurrence is replaced by a capture group matching
    the same character class (digits or a path-safe token) and everything
    else is escaped.
    """
    if not sample_url or not identifier:
        raise ValidationError("sampleUrl and identifier are required")
    position = sample_url.rfind(identifier)
    if position < 0:
        raise ValidationError("identifier does not occur in sampleUrl")

    prefix = sample_url[:position]
    suffix = sample_url[position + len(identifier):]
    group = r"(\d+)" if identifier.isdigit() else r"([^/?&#]+)"
    return re.escape(prefix) + group + re.escape(suffix)
