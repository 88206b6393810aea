# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import re
import typing
from urllib.parse import urlparse


def to_bytes(
    obj: typing.Any,
    encoding: str = "utf-8",
) -> bytes:
    """
    Makes sure the string is encoded as a byte string.

    :param obj: Byte string or unicode string to encode
    :param encoding: The encoding to use
    :return: The byte string that was encoded
    """
    if isinstance(obj, bytes):
        return obj

    return obj.encode(encoding)


def to_unicode(
    obj: typing.Any,
    encoding: str = "utf-8",
) -> str:
    """
    Makes sure the string is unicode string.

    :param obj: Byte string or unicode string to decode
    :param encoding: The encoding to use
    :return: The unicode string the was decoded
    """
    if obj is None:
        obj = str(None)

    if isinstance(obj, str):
        return obj

    return obj.decode(encoding)


to_string = to_unicode


def get_hostname(url: str) -> typing.Optional[str]:
    return urlparse(url).hostname


def to_iso8601_duration(seconds: int) -> str:
    """
    Converts a number of seconds to the ISO 8601 duration format used by the
    wsman:OperationTimeout and rsp:IdleTimeOut elements.

    Each unit is only split out when the value is strictly larger than that
    unit so 60 stays as PT60S while 90 becomes PT1M30S.

    :param seconds: The number of seconds to convert
    :return: The ISO 8601 duration string
    """
    seconds = int(seconds)
    duration = "P"

    weeks, seconds = _split_unit(seconds, 604800)
    if weeks:
        duration += "%dW" % weeks

    days, seconds = _split_unit(seconds, 86400)
    if days:
        duration += "%dD" % days

    if seconds > 0:
        duration += "T"
        hours, seconds = _split_unit(seconds, 3600)
        if hours:
            duration += "%dH" % hours

        minutes, seconds = _split_unit(seconds, 60)
        if minutes:
            duration += "%dM" % minutes

        duration += "%dS" % seconds

    return duration


def _split_unit(seconds: int, unit: int) -> typing.Tuple[int, int]:
    if seconds > unit:
        return seconds // unit, seconds % unit

    return 0, seconds


def snakecase(value: str) -> str:
    """
    Converts a CamelCase XML tag name like Win32_Service or ProcessId to the
    snake case form win32_service and process_id.

    :param value: The tag name to convert
    :return: The snake case version of value
    """
    value = value.replace("::", "/")
    value = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", value)
    value = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", value)
    value = value.replace(".", "_").replace("-", "_")
    return value.lower()
