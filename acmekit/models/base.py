import datetime
import re
import typing

import acme.messages
import josepy

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def decode_datetime(value: str) -> datetime.datetime:
    """Decodes an RFC 3339 timestamp as sent by ACME servers.

    Fractions of a second beyond microsecond precision are truncated.
    """
    value = _FRACTION_RE.sub(r".\1", value)
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.datetime.fromisoformat(value)


def encode_datetime(value: datetime.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def decode_error(jobj: dict) -> acme.messages.Error:
    return acme.messages.Error.from_json(jobj)


def list_of(cls: typing.Type[josepy.JSONDeSerializable]):
    """Returns a decoder for a JSON list of objects of the given type."""

    def decoder(jobj):
        return tuple(cls.from_json(item) for item in jobj)

    return decoder


def datetime_field(json_name: str, **kwargs) -> josepy.Field:
    return josepy.Field(
        json_name, decoder=decode_datetime, encoder=encode_datetime, **kwargs
    )


def error_field(json_name: str = "error") -> josepy.Field:
    return josepy.Field(
        json_name,
        decoder=decode_error,
        encoder=lambda error: error.to_partial_json(),
        omitempty=True,
    )
