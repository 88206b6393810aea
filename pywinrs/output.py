# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import binascii
import codecs
import collections
import logging
import typing

from pywinrs._utils import to_bytes
from pywinrs.exceptions import ConfigurationError

log = logging.getLogger(__name__)

UTF8_CODEPAGE = 65001


class OutputDecoder(object):
    def __init__(self, codepage: typing.Optional[int] = None) -> None:
        """
        Decodes the base64 text of a rsp:Stream element to a string. The shell
        code page decides which encoding the raw bytes are in.

        :param codepage: The WINRS_CODEPAGE of the shell, UTF-8 when None
        """
        self.codepage = codepage
        self.encoding = self._get_encoding(codepage)

    @staticmethod
    def _get_encoding(codepage: typing.Optional[int]) -> str:
        if codepage is None or int(codepage) == UTF8_CODEPAGE:
            return "utf-8"

        encoding = "cp%d" % int(codepage)
        try:
            codecs.lookup(encoding)
        except LookupError:
            raise ConfigurationError("Unsupported shell code page %s" % codepage)

        return encoding

    def decode(self, raw: typing.Union[str, bytes]) -> str:
        # multi-part chunks can be split over multiple lines
        raw = b"".join(to_bytes(raw).split())
        try:
            data = base64.b64decode(raw)
        except (binascii.Error, ValueError) as err:
            log.warning("Failed to base64 decode output stream: %s", err)
            raise

        text = data.decode(self.encoding, errors="replace")
        return text.replace("\ufeff", "", 1)


class OutputFragment(collections.namedtuple("OutputFragment", ["stream", "text"])):
    __slots__ = ()

    @property
    def stdout(self) -> typing.Optional[str]:
        return self.text if self.stream == "stdout" else None

    @property
    def stderr(self) -> typing.Optional[str]:
        return self.text if self.stream == "stderr" else None


class Output(object):
    """
    The output of a command. The stream fragments are kept in the order they
    were received so stdout and stderr interleaving is preserved.
    """

    def __init__(self) -> None:
        self.data: typing.List[OutputFragment] = []
        self.exitcode: typing.Optional[int] = None

    def __repr__(self) -> str:
        return "<Output fragments=%d exitcode=%r>" % (len(self.data), self.exitcode)

    def append(self, stream: str, text: str) -> OutputFragment:
        fragment = OutputFragment(stream, text)
        self.data.append(fragment)
        return fragment

    @property
    def stdout(self) -> str:
        return "".join(f.text for f in self.data if f.stream == "stdout")

    @property
    def stderr(self) -> str:
        return "".join(f.text for f in self.data if f.stream == "stderr")
