# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import logging
import re
import typing
import warnings
import xml.etree.ElementTree as ET

import requests
import requests.adapters
import spnego
from urllib3.exceptions import InsecureRequestWarning
from urllib3.util.retry import Retry

from pywinrs._utils import get_hostname, to_string
from pywinrs.config import DEFAULT_USER_AGENT, ConnectionOptions, TransportKind
from pywinrs.encryption import EncryptionProtocol, WinRMEncryption
from pywinrs.exceptions import AuthenticationError, UnsupportedTransportError, WinRMTransportError
from pywinrs.negotiate import HTTPNegotiateAuth
from pywinrs.wsman import NAMESPACES, parse_wsman_fault

log = logging.getLogger(__name__)


class FingerprintAdapter(requests.adapters.HTTPAdapter):
    def __init__(self, fingerprint: str, **kwargs: typing.Any) -> None:
        """
        Pins the TLS certificate of the server to a SHA1 or SHA256
        fingerprint instead of validating it against a CA.
        """
        self.fingerprint = fingerprint.replace(":", "").lower()
        super(FingerprintAdapter, self).__init__(**kwargs)

    def init_poolmanager(self, *args: typing.Any, **kwargs: typing.Any) -> None:
        kwargs["assert_fingerprint"] = self.fingerprint
        super(FingerprintAdapter, self).init_poolmanager(*args, **kwargs)


class HttpTransport(object):
    auth_name = "none"

    def __init__(
        self,
        endpoint: str,
        user: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        receive_timeout: int = 70,
        connection_timeout: int = 30,
        retry_limit: int = 3,
        retry_delay: int = 10,
        verify: typing.Union[bool, str] = True,
        ssl_peer_fingerprint: typing.Optional[str] = None,
        proxy: typing.Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """
        Sends SOAP envelopes to a WinRM listener over HTTP(S).

        :param endpoint: The URL of the WinRM listener
        :param user: The username to authenticate with
        :param password: The password for user
        :param receive_timeout: The read timeout of each request in seconds
        :param connection_timeout: The connect timeout in seconds
        :param retry_limit: Connection level retries of a request
        :param retry_delay: Backoff factor between connection retries
        :param verify: Verify the server certificate, or a CA bundle path
        :param ssl_peer_fingerprint: Pin the server certificate to this
            fingerprint, certificate validation is not done when set
        :param proxy: The proxy URL to send the requests through
        :param user_agent: The User-Agent header value
        """
        self.endpoint = endpoint
        self.user = user
        self.password = password
        self.receive_timeout = receive_timeout
        self.connection_timeout = connection_timeout
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.verify = verify
        self.ssl_peer_fingerprint = ssl_peer_fingerprint
        self.proxy = proxy
        self.user_agent = user_agent
        self.session: typing.Optional[requests.Session] = None
        self.encryption: typing.Optional[WinRMEncryption] = None

        log.debug(
            "Initialising %s for endpoint: %s, auth: %s, user: %s",
            type(self).__name__,
            self.endpoint,
            self.auth_name,
            self.user,
        )

    @property
    def wrap_required(self) -> bool:
        return False

    def send_request(self, message: bytes) -> ET.Element:
        """
        Sends the envelope and returns the parsed response envelope.

        :param message: The UTF-8 encoded envelope
        :return: The s:Envelope element of the response
        """
        if self.session is None:
            self.session = self._build_session()

            # need to send an initial blank message to setup the security
            # context required for encryption
            if self.wrap_required:
                request = requests.Request("POST", self.endpoint, data=None)
                self._send(self.session.prepare_request(request))
                self.encryption = self._build_encryption()

        headers = {}
        if self.encryption is not None:
            payload = self.encryption.wrap_message(message)
            headers["Content-Type"] = self.encryption.content_type
        else:
            payload = message
            headers["Content-Type"] = "application/soap+xml;charset=UTF-8"
        headers["Content-Length"] = str(len(payload))

        request = requests.Request("POST", self.endpoint, data=payload, headers=headers)
        content = self._send(self.session.prepare_request(request))
        return ET.fromstring(content)

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None
            self.encryption = None

    def _send(self, request: requests.PreparedRequest) -> bytes:
        assert self.session is not None
        response = self.session.send(request, timeout=(self.connection_timeout, self.receive_timeout))

        content_type = response.headers.get("content-type", "")
        if self.encryption is not None and (
            content_type.startswith("multipart/encrypted;") or content_type.startswith("multipart/x-multi-encrypted;")
        ):
            boundary = re.search(r"boundary=[\"']?([^\"']+)[\"']?", content_type).group(1)  # type: ignore[union-attr]
            content = self.encryption.unwrap_message(response.content, boundary)
        else:
            content = response.content

        response_text = to_string(content) if content else ""
        log.debug("Received message: %s", response_text)

        if response.status_code == 401:
            raise AuthenticationError("Failed to authenticate the user %s with %s" % (self.user, self.auth_name))

        if response.status_code >= 400:
            # WinRM returns the SOAP fault of a failed operation with a 500
            if response.status_code == 500 and content and self._is_soap_fault(content):
                raise parse_wsman_fault(content)

            raise WinRMTransportError("http", response.status_code, response_text)

        return content

    @staticmethod
    def _is_soap_fault(content: bytes) -> bool:
        try:
            xml = ET.fromstring(content)
        except ET.ParseError:
            return False

        return xml.find("s:Body/s:Fault", namespaces=NAMESPACES) is not None

    def _build_session(self) -> requests.Session:
        log.debug("Building requests session with auth %s", self.auth_name)
        self._suppress_library_warnings()

        session = requests.Session()
        session.headers["User-Agent"] = self.user_agent

        # get the env requests settings
        session.trust_env = True
        settings = session.merge_environment_settings(
            url=self.endpoint,
            proxies={},
            stream=None,
            verify=None,
            cert=None,
        )

        session.proxies = settings["proxies"]
        if self.proxy is not None:
            proxy_key = "https" if self.endpoint.startswith("https") else "http"
            session.proxies = {proxy_key: self.proxy}

        # Retry on connection errors, with a backoff factor
        retries = Retry(
            total=self.retry_limit,
            connect=self.retry_limit,
            status=self.retry_limit,
            read=0,
            backoff_factor=self.retry_delay,
            status_forcelist=(425, 429, 503),
        )
        session.mount("http://", requests.adapters.HTTPAdapter(max_retries=retries))
        if self.ssl_peer_fingerprint is not None:
            session.mount("https://", FingerprintAdapter(self.ssl_peer_fingerprint, max_retries=retries))
        else:
            session.mount("https://", requests.adapters.HTTPAdapter(max_retries=retries))

        session.verify = False if self.ssl_peer_fingerprint is not None else self.verify

        # if verify is a bool (no path specified), not False and there are env
        # settings for verification, set those env settings
        if session.verify is True and settings["verify"] is not None:
            session.verify = settings["verify"]

        session.auth = self._build_auth()
        return session

    def _build_auth(self) -> typing.Any:
        return None

    def _build_encryption(self) -> WinRMEncryption:
        assert self.session is not None
        auth = self.session.auth
        host = get_hostname(self.endpoint)
        protocol = EncryptionProtocol.from_auth_header(auth.schemes_used.get(host))  # type: ignore[union-attr]
        return WinRMEncryption(auth.contexts[host], protocol)  # type: ignore[union-attr]

    def _suppress_library_warnings(self) -> None:
        # if we're explicitly ignoring validation, suppress the
        # InsecureRequestWarning since the user opted-in
        if self.verify is False or self.ssl_peer_fingerprint is not None:
            warnings.simplefilter("ignore", category=InsecureRequestWarning)


class HttpNegotiate(HttpTransport):
    auth_name = "negotiate"

    def __init__(
        self,
        endpoint: str,
        user: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        service: str = "HTTP",
        hostname_override: typing.Optional[str] = None,
        delegate: bool = False,
        **kwargs: typing.Any,
    ) -> None:
        self.service = service
        self.hostname_override = hostname_override
        self.delegate = delegate
        super(HttpNegotiate, self).__init__(endpoint, user=user, password=password, **kwargs)

    @property
    def wrap_required(self) -> bool:
        # messages over HTTPS are already encrypted by TLS
        return not self.endpoint.lower().startswith("https")

    def _build_auth(self) -> typing.Any:
        return self._negotiate_auth(self.user, self.password, "negotiate")

    def _negotiate_auth(self, username: typing.Any, password: typing.Optional[str], protocol: str) -> HTTPNegotiateAuth:
        return HTTPNegotiateAuth(
            username=username,
            password=password,
            protocol=protocol,
            service=self.service,
            hostname_override=self.hostname_override,
            delegate=self.delegate,
            wrap_required=self.wrap_required,
        )


class HttpGSSAPI(HttpNegotiate):
    auth_name = "kerberos"

    def __init__(
        self,
        endpoint: str,
        realm: typing.Optional[str] = None,
        service: str = "HTTP",
        keytab: typing.Optional[str] = None,
        user: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        **kwargs: typing.Any,
    ) -> None:
        """
        Kerberos only authentication.

        :param endpoint: The URL of the WinRM listener
        :param realm: The Kerberos realm, appended to user when user has none
        :param service: The service class of the SPN
        :param keytab: Path to a keytab to get the credential of user from,
            the password is not used when set
        """
        self.realm = realm
        self.keytab = keytab
        super(HttpGSSAPI, self).__init__(endpoint, user=user, password=password, service=service, **kwargs)

    @property
    def principal(self) -> typing.Optional[str]:
        if self.user and self.realm and "@" not in self.user:
            return "%s@%s" % (self.user, self.realm)

        return self.user

    def _build_auth(self) -> typing.Any:
        username: typing.Any = self.principal
        password = self.password
        if self.keytab is not None:
            username = spnego.KerberosKeytab(keytab=self.keytab, principal=self.principal)
            password = None

        return self._negotiate_auth(username, password, "kerberos")


class HttpPlaintext(HttpTransport):
    auth_name = "basic"

    def _build_auth(self) -> typing.Any:
        if self.user is None:
            raise ValueError("For basic auth, the username must be specified")
        if self.password is None:
            raise ValueError("For basic auth, the password must be specified")

        return requests.auth.HTTPBasicAuth(username=self.user, password=self.password)


class BasicAuthSSL(HttpPlaintext):
    pass


def _verify_setting(options: ConnectionOptions) -> typing.Union[bool, str]:
    if options.no_ssl_peer_verification:
        return False

    if options.ca_trust_path is not None:
        return options.ca_trust_path

    return True


def _common_kwargs(options: ConnectionOptions) -> typing.Dict[str, typing.Any]:
    return {
        "user": options.user,
        "password": options.password,
        "receive_timeout": options.receive_timeout,
        "retry_limit": options.retry_limit,
        "retry_delay": options.retry_delay,
        "proxy": options.proxy,
        "user_agent": options.user_agent,
    }


def _negotiate_kwargs(options: ConnectionOptions) -> typing.Dict[str, typing.Any]:
    return {
        "service": options.service,
        "hostname_override": options.negotiate_hostname_override,
        "delegate": options.negotiate_delegate,
    }


def _build_negotiate(options: ConnectionOptions) -> HttpTransport:
    kwargs = _common_kwargs(options)
    kwargs.update(_negotiate_kwargs(options))
    return HttpNegotiate(options.endpoint, **kwargs)  # type: ignore[arg-type]


def _build_kerberos(options: ConnectionOptions) -> HttpTransport:
    kwargs = _common_kwargs(options)
    kwargs.update(_negotiate_kwargs(options))
    return HttpGSSAPI(
        options.endpoint,  # type: ignore[arg-type]
        realm=options.realm,
        keytab=options.keytab,
        **kwargs,
    )


def _build_plaintext(options: ConnectionOptions) -> HttpTransport:
    return HttpPlaintext(options.endpoint, **_common_kwargs(options))  # type: ignore[arg-type]


def _build_ssl(options: ConnectionOptions) -> HttpTransport:
    kwargs = _common_kwargs(options)
    kwargs["verify"] = _verify_setting(options)
    kwargs["ssl_peer_fingerprint"] = options.ssl_peer_fingerprint

    if options.basic_auth_only:
        return BasicAuthSSL(options.endpoint, **kwargs)  # type: ignore[arg-type]

    kwargs.update(_negotiate_kwargs(options))
    return HttpNegotiate(options.endpoint, **kwargs)  # type: ignore[arg-type]


_BUILDERS: typing.Dict[str, typing.Callable[[ConnectionOptions], HttpTransport]] = {
    TransportKind.NEGOTIATE: _build_negotiate,
    TransportKind.KERBEROS: _build_kerberos,
    TransportKind.PLAINTEXT: _build_plaintext,
    TransportKind.SSL: _build_ssl,
}


def build_transport(options: ConnectionOptions) -> HttpTransport:
    """
    Creates the transport selected by options.transport.

    :param options: The ConnectionOptions of the session
    :return: The HttpTransport for the kind
    """
    builder = _BUILDERS.get(options.transport)
    if builder is None:
        raise UnsupportedTransportError(
            "Invalid transport '%s' specified, expected: %s"
            % (options.transport, ", ".join(TransportKind.values()))
        )

    return builder(options)
