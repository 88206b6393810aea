# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import logging
import re
import typing
import warnings

import requests
import spnego
import spnego.channel_bindings
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from requests.auth import AuthBase
from urllib3.response import HTTPResponse

from pywinrs._utils import get_hostname, to_bytes
from pywinrs.exceptions import AuthenticationError

log = logging.getLogger(__name__)

_WWW_AUTHENTICATE_TOKEN = re.compile(r"(Kerberos|Negotiate|NTLM)\s*([^,]*),?", re.I)


class NoCertificateRetrievedWarning(Warning):
    pass


class UnknownSignatureAlgorithmOID(Warning):
    pass


class HTTPNegotiateAuth(AuthBase):
    # WWW-Authenticate schemes in order of preference
    schemes = ("Negotiate", "Kerberos")

    def __init__(
        self,
        username: typing.Optional[typing.Any] = None,
        password: typing.Optional[str] = None,
        protocol: str = "negotiate",
        service: str = "HTTP",
        hostname_override: typing.Optional[str] = None,
        send_cbt: bool = True,
        delegate: bool = False,
        wrap_required: bool = False,
    ) -> None:
        """
        Authenticates the WinRM requests of a session with Negotiate or
        Kerberos through pyspnego. The security context of each host is kept
        so the transport can encrypt the envelopes with it afterwards.

        :param username: The username or a pyspnego credential object like
            spnego.KerberosKeytab
        :param password: The password for username
        :param protocol: negotiate or kerberos, kerberos fails when Kerberos
            is not available
        :param service: The service class of the SPN
        :param hostname_override: The host of the SPN, the URL host when None
        :param send_cbt: Bind the TLS channel to the auth when over HTTPS
        :param delegate: Request a delegatable Kerberos ticket
        :param wrap_required: Create a context that can encrypt messages
        """
        self.username = username
        self.password = password
        self.protocol = protocol
        self.service = service
        self.hostname_override = hostname_override
        self.send_cbt = send_cbt
        self.delegate = delegate
        self.wrap_required = wrap_required

        # host -> security context and the scheme it was negotiated with
        self.contexts: typing.Dict[str, typing.Any] = {}
        self.schemes_used: typing.Dict[str, str] = {}

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        request.headers["Connection"] = "Keep-Alive"
        request.register_hook("response", self.response_hook)

        return request

    def response_hook(self, response: requests.Response, **kwargs: typing.Any) -> requests.Response:
        if response.status_code != 401:
            return response

        scheme = self._select_scheme(response)
        host = get_hostname(response.url) or ""
        context = self._create_context(host, response)
        self.contexts[host] = context
        self.schemes_used[host] = scheme.lower()

        out_token = context.step()
        while not context.complete or out_token is not None:
            # the next leg must reuse this connection
            response.content
            response.raw.release_conn()

            request = response.request.copy()
            request.headers["Authorization"] = self._encode_token(scheme, out_token)
            log.debug("Sending %s token to %s", scheme, host)
            response = response.connection.send(request, **kwargs)

            in_token = self._decode_token(response)
            if not in_token:
                log.debug("No %s token in the response from %s, auth exchange finished", scheme, host)
                break

            out_token = context.step(in_token)

        return response

    def _create_context(self, host: str, response: requests.Response) -> typing.Any:
        channel_bindings = None
        if self.send_cbt:
            application_data = self._channel_binding_data(response)
            if application_data:
                channel_bindings = spnego.channel_bindings.GssChannelBindings(application_data=application_data)

        context_req = spnego.ContextReq.default
        if self.delegate:
            context_req |= spnego.ContextReq.delegate

        return spnego.client(
            self.username,
            self.password,
            hostname=self.hostname_override or host,
            service=self.service,
            channel_bindings=channel_bindings,
            context_req=context_req,
            protocol=self.protocol,
            options=spnego.NegotiateOptions.wrapping_winrm if self.wrap_required else 0,
        )

    @classmethod
    def _select_scheme(cls, response: requests.Response) -> str:
        offered = response.headers.get("www-authenticate", "")
        for scheme in cls.schemes:
            if scheme.upper() in offered.upper():
                return scheme

        raise AuthenticationError(
            "The server did not offer any of the authentication schemes %s, WWW-Authenticate: '%s'"
            % (", ".join(cls.schemes), offered)
        )

    @staticmethod
    def _encode_token(scheme: str, token: bytes) -> bytes:
        return to_bytes("%s " % scheme) + base64.b64encode(token)

    @staticmethod
    def _decode_token(response: requests.Response) -> typing.Optional[bytes]:
        match = _WWW_AUTHENTICATE_TOKEN.search(response.headers.get("www-authenticate", ""))
        if not match:
            return None

        return base64.b64decode(match.group(2))

    @staticmethod
    def _channel_binding_data(response: requests.Response) -> typing.Optional[bytes]:
        """
        The RFC 5929 tls-server-end-point application data of the connection
        the response came from.

        :param response: The 401 response from the WinRM listener
        :return: The channel binding data or None for a plain HTTP connection
        """
        raw = response.raw
        if not isinstance(raw, HTTPResponse):
            warnings.warn(
                "Cannot get the server certificate for channel binding from a %s response, only urllib3 "
                "responses are supported" % type(raw).__name__,
                NoCertificateRetrievedWarning,
            )
            return None

        try:
            sock = raw._fp.fp.raw._sock  # type: ignore[union-attr]
        except AttributeError as err:
            warnings.warn(
                "Cannot get the socket of the urllib3 response for channel binding: %s" % err,
                NoCertificateRetrievedWarning,
            )
            return None

        try:
            certificate = sock.getpeercert(True)
        except AttributeError:
            return None

        return b"tls-server-end-point:" + HTTPNegotiateAuth._certificate_hash(certificate)

    @staticmethod
    def _certificate_hash(certificate_der: bytes) -> bytes:
        """
        https://tools.ietf.org/html/rfc5929#section-4.1

        MD5 and SHA1 signed certificates are hashed with SHA256, everything
        else with the hash of its signature algorithm.
        """
        certificate = x509.load_der_x509_certificate(certificate_der)

        algorithm = None
        try:
            algorithm = certificate.signature_hash_algorithm
        except UnsupportedAlgorithm as err:
            warnings.warn(
                "Unknown signature algorithm in the server certificate, using SHA256: %s" % err,
                UnknownSignatureAlgorithmOID,
            )

        if algorithm is None or algorithm.name in ("md5", "sha1"):
            algorithm = hashes.SHA256()

        digest = hashes.Hash(algorithm)
        digest.update(certificate_der)
        return digest.finalize()
