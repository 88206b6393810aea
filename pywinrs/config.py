# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import inspect
import logging
import typing
import uuid

from pywinrs.exceptions import ConfigurationError, UnsupportedTransportError

log = logging.getLogger(__name__)


class TransportKind(object):
    """
    The closed set of transports a session can be wired with.
    """

    NEGOTIATE = "negotiate"
    KERBEROS = "kerberos"
    PLAINTEXT = "plaintext"
    SSL = "ssl"

    @classmethod
    def values(cls) -> typing.Tuple[str, ...]:
        return cls.NEGOTIATE, cls.KERBEROS, cls.PLAINTEXT, cls.SSL


DEFAULT_USER_AGENT = "Python pywinrs Client"

_REQUIRED = ("endpoint", "user", "password")

# name -> name of the option the value must be larger than, 0 is used when
# there is no relative minimum
_POSITIVE_INTEGERS = (
    ("retry_limit", None),
    ("retry_delay", None),
    ("max_envelope_size", None),
    ("max_commands", None),
    ("operation_timeout", None),
    ("receive_timeout", "operation_timeout"),
)


class ConnectionOptions(object):
    def __init__(
        self,
        endpoint: typing.Optional[str] = None,
        user: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        transport: str = TransportKind.NEGOTIATE,
        operation_timeout: int = 60,
        receive_timeout: int = 70,
        max_envelope_size: int = 153600,
        locale: str = "en-US",
        retry_limit: int = 3,
        retry_delay: int = 10,
        max_commands: int = 1480,
        session_id: typing.Optional[str] = None,
        realm: typing.Optional[str] = None,
        service: str = "HTTP",
        keytab: typing.Optional[str] = None,
        basic_auth_only: bool = False,
        no_ssl_peer_verification: bool = False,
        ssl_peer_fingerprint: typing.Optional[str] = None,
        ca_trust_path: typing.Optional[str] = None,
        proxy: typing.Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        negotiate_hostname_override: typing.Optional[str] = None,
        negotiate_delegate: bool = False,
    ) -> None:
        """
        The settings used by a WinRMService and the transport it sends with.

        Use create_with_defaults() to build a validated instance, creating
        the object directly does not apply the receive timeout correction or
        check the values.

        :param endpoint: The full URL of the WinRM listener
        :param user: The username to authenticate with
        :param password: The password for user
        :param transport: A TransportKind value
        :param operation_timeout: The wsman:OperationTimeout in seconds
        :param receive_timeout: The HTTP read timeout in seconds, must be
            larger than operation_timeout
        :param max_envelope_size: The wsman:MaxEnvelopeSize in bytes
        :param locale: The wsman:Locale and wsmv:DataLocale language
        :param retry_limit: Connection level retries done by the transport
        :param retry_delay: Backoff factor for the connection level retries
        :param max_commands: The number of commands a CommandExecutor runs
            before it recycles its shell
        :param session_id: The wsmv:SessionId, an upper case UUID is
            generated when not set
        :param realm: The Kerberos realm for the kerberos transport
        :param service: The Kerberos service class for the kerberos transport
        :param keytab: Path to a keytab used by the kerberos transport
        :param basic_auth_only: The ssl transport uses Basic auth
        :param no_ssl_peer_verification: Do not verify the server certificate
        :param ssl_peer_fingerprint: Pin the server certificate to this
            SHA1 or SHA256 fingerprint
        :param ca_trust_path: CA bundle used to verify the server certificate
        :param proxy: Proxy URL for the HTTP session
        :param user_agent: The User-Agent header value
        :param negotiate_hostname_override: The host used in the SPN of the
            negotiate and kerberos transports instead of the endpoint host
        :param negotiate_delegate: Request a delegatable Kerberos ticket
        """
        self.endpoint = endpoint
        self.user = user
        self.password = password
        self.transport = transport
        self.operation_timeout = operation_timeout
        self.receive_timeout = receive_timeout
        self.max_envelope_size = max_envelope_size
        self.locale = locale
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.max_commands = max_commands
        self.session_id = session_id or str(uuid.uuid4()).upper()
        self.realm = realm
        self.service = service
        self.keytab = keytab
        self.basic_auth_only = basic_auth_only
        self.no_ssl_peer_verification = no_ssl_peer_verification
        self.ssl_peer_fingerprint = ssl_peer_fingerprint
        self.ca_trust_path = ca_trust_path
        self.proxy = proxy
        self.user_agent = user_agent
        self.negotiate_hostname_override = negotiate_hostname_override
        self.negotiate_delegate = negotiate_delegate

    def __repr__(self) -> str:
        return "<%s endpoint=%r user=%r transport=%r>" % (
            type(self).__name__,
            self.endpoint,
            self.user,
            self.transport,
        )

    @classmethod
    def create_with_defaults(cls, **overrides: typing.Any) -> "ConnectionOptions":
        unknown = set(overrides) - set(inspect.signature(cls).parameters)
        if unknown:
            raise ConfigurationError("Unknown connection option(s): %s" % ", ".join(sorted(unknown)))

        options = cls(**overrides)
        options.correct_receive_timeout()
        options.validate()
        return options

    def correct_receive_timeout(self) -> None:
        """
        The receive timeout is the read timeout of the HTTP request and must
        outlast the server side operation timeout, a lower value is raised
        to the operation timeout plus 10 seconds.
        """
        operation_timeout = self.operation_timeout
        receive_timeout = self.receive_timeout
        if not _is_int(operation_timeout) or not _is_int(receive_timeout):
            return

        if receive_timeout < operation_timeout:
            log.debug(
                "Raising receive_timeout %d to operation_timeout %d + 10 seconds",
                receive_timeout,
                operation_timeout,
            )
            self.receive_timeout = operation_timeout + 10

    def validate(self) -> None:
        for name in _REQUIRED:
            if getattr(self, name) is None:
                raise ConfigurationError("%s is a required option" % name)

        for name, minimum_name in _POSITIVE_INTEGERS:
            minimum = getattr(self, minimum_name) if minimum_name else 0
            check_integer_above(name, getattr(self, name), minimum)

        if self.transport not in TransportKind.values():
            raise UnsupportedTransportError(
                "Invalid transport '%s' specified, expected: %s"
                % (self.transport, ", ".join(TransportKind.values()))
            )


def _is_int(value: typing.Any) -> bool:
    # bool is a subclass of int but is never a valid numeric option
    return isinstance(value, int) and not isinstance(value, bool)


def check_integer_above(name: str, value: typing.Any, minimum: int = 0) -> None:
    if not _is_int(value):
        raise ConfigurationError("%s must be an integer" % name)

    if value <= minimum:
        raise ConfigurationError("%s must be greater than %d" % (name, minimum))
