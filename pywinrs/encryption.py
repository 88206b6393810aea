# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import logging
import re
import struct
import typing

from pywinrs._utils import to_bytes
from pywinrs.exceptions import WinRMError

log = logging.getLogger(__name__)

MIME_BOUNDARY = "--Encrypted Boundary"


class EncryptionProtocol(object):
    KERBEROS = "application/HTTP-Kerberos-session-encrypted"
    SPNEGO = "application/HTTP-SPNEGO-session-encrypted"

    @classmethod
    def from_auth_header(cls, auth_header: typing.Optional[str]) -> str:
        # a plain Kerberos exchange uses its own protocol value, everything
        # negotiated through SPNEGO (including NTLM) uses the SPNEGO one
        if auth_header and auth_header.lower() == "kerberos":
            return cls.KERBEROS

        return cls.SPNEGO


class WinRMEncryption(object):
    def __init__(self, context: typing.Any, protocol: str) -> None:
        """
        [MS-WSMV] 2.2.9.1 Encrypted Message Types

        Wraps and unwraps the SOAP envelopes sent over plain HTTP with the
        security context created during authentication.

        :param context: The pyspnego context of the connection
        :param protocol: The EncryptionProtocol value
        """
        log.debug("Initialising WinRMEncryption helper for protocol %s", protocol)
        self.context = context
        self.protocol = protocol

    @property
    def content_type(self) -> str:
        return 'multipart/encrypted;protocol="%s";boundary="Encrypted Boundary"' % self.protocol

    def wrap_message(self, message: bytes) -> bytes:
        header, wrapped_data, padding_length = self.context.wrap_winrm(message)
        wrapped_data = struct.pack("<i", len(header)) + header + wrapped_data

        payload = "\r\n".join(
            [
                MIME_BOUNDARY,
                "\tContent-Type: %s" % self.protocol,
                "\tOriginalContent: type=application/soap+xml;charset=UTF-8;Length=%d"
                % (len(message) + padding_length),
                MIME_BOUNDARY,
                "\tContent-Type: application/octet-stream",
                "",
            ]
        )

        log.debug("Wrapped message of %d bytes", len(message))
        return to_bytes(payload) + wrapped_data + to_bytes("%s--\r\n" % MIME_BOUNDARY)

    def unwrap_message(self, message: bytes, boundary: str) -> bytes:
        # some endpoints put a space between the -- and the boundary
        parts = re.compile(to_bytes(r"--\s*%s\r\n" % re.escape(boundary))).split(message)
        parts = [p for p in parts if p]

        unwrapped = b""
        for header, payload in zip(parts[0::2], parts[1::2]):
            expected_length = int(header.strip().split(b"Length=")[1])

            payload = re.sub(to_bytes(r"--\s*%s--\r\n$" % re.escape(boundary)), b"", payload)
            payload = payload.replace(b"\tContent-Type: application/octet-stream\r\n", b"")

            signature_length = struct.unpack("<i", payload[:4])[0]
            signature = payload[4 : 4 + signature_length]
            data = self.context.unwrap_winrm(signature, payload[4 + signature_length :])

            if len(data) != expected_length:
                raise WinRMError(
                    "The encrypted length from the server does not match the expected length, decryption "
                    "failed, actual: %d != expected: %d" % (len(data), expected_length)
                )
            unwrapped += data

        return unwrapped
