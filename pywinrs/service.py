# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import contextlib
import logging
import typing
import uuid
import xml.etree.ElementTree as ET

import xmltodict

from pywinrs._utils import snakecase, to_bytes, to_iso8601_duration, to_unicode
from pywinrs.config import ConnectionOptions, check_integer_above
from pywinrs.exceptions import (
    InvalidShellStateError,
    MalformedResponseError,
    WinRMError,
    WSManFaultCode,
    WSManFaultError,
)
from pywinrs.output import UTF8_CODEPAGE, Output, OutputDecoder
from pywinrs.psrp import MessageType, create_pipeline_payload, encode_fragment
from pywinrs.wsman import (
    NAMESPACES,
    HeaderFragment,
    OptionSet,
    ResourceURI,
    SessionContext,
    action_command,
    action_create,
    action_delete,
    action_enumerate,
    action_receive,
    action_send,
    action_signal,
    build_envelope,
    merge_headers,
    resource_uri,
    resource_uri_wmi,
    selector_shell_id,
    shared_headers,
)

if typing.TYPE_CHECKING:
    from pywinrs.executor import CommandExecutor

log = logging.getLogger(__name__)


class CommandState(object):
    DONE = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/CommandState/Done"
    PENDING = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/CommandState/Pending"
    RUNNING = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/CommandState/Running"


class SignalCode(object):
    """
    [MS-WSMV] 2.2.4.38 Signal - Code
    https://msdn.microsoft.com/en-us/library/cc251558.aspx
    """

    CTRL_C = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/signal/ctrl_c"
    CTRL_BREAK = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/signal/ctrl_break"
    TERMINATE = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/signal/terminate"


class ShellState(object):
    UNOPENED = "unopened"
    OPEN = "open"
    BUSY = "busy"
    CLOSED = "closed"


WQL_DIALECT = "http://schemas.microsoft.com/wbem/wsman/1/WQL"


class ShellOptions(object):
    def __init__(
        self,
        input_streams: str = "stdin",
        output_streams: str = "stdout stderr",
        working_directory: typing.Optional[str] = None,
        codepage: int = UTF8_CODEPAGE,
        no_profile: typing.Optional[bool] = None,
        idle_timeout: typing.Optional[int] = None,
        environment: typing.Optional[typing.Dict[str, str]] = None,
        resource_uri: str = ResourceURI.CMD,
    ) -> None:
        """
        The settings of a remote shell created by WinRMService.open_shell().
        Options left as None are not sent to the server.

        :param input_streams: The input stream names of the shell
        :param output_streams: The output stream names of the shell
        :param working_directory: The starting directory of the shell
        :param codepage: The WINRS_CODEPAGE of the shell, always sent so the
            output is decoded with the same code page the server encodes with
        :param no_profile: The WINRS_NOPROFILE setting
        :param idle_timeout: The IdleTimeOut of the shell in seconds
        :param environment: Environment variables to set in the shell
        :param resource_uri: The shell resource, cmd by default
        """
        self.input_streams = input_streams
        self.output_streams = output_streams
        self.working_directory = working_directory
        self.codepage = codepage
        self.no_profile = no_profile
        self.idle_timeout = idle_timeout
        self.environment = environment
        self.resource_uri = resource_uri


class _Shell(object):
    def __init__(self, resource_uri: str, decoder: OutputDecoder) -> None:
        self.state = ShellState.UNOPENED
        self.resource_uri = resource_uri
        self.decoder = decoder


def _option_value(value: typing.Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"

    return str(value)


def _wql_postprocessor(path: typing.Any, key: str, value: typing.Any) -> typing.Tuple[str, typing.Any]:
    return snakecase(key.rsplit(":", 1)[-1]), value


class WinRMService(object):
    def __init__(
        self,
        options: ConnectionOptions,
        transport: typing.Optional[typing.Any] = None,
        logger: typing.Optional[logging.Logger] = None,
    ) -> None:
        """
        The WinRM remote shell client. Runs commands in a cmd or PowerShell
        shell on the remote host and queries WMI with WQL.

        :param options: The ConnectionOptions of the session, these are
            validated here and raise ConfigurationError when invalid
        :param transport: The transport used to send the envelopes, built from
            options when not set
        :param logger: The logger used by the session, defaults to the module
            logger
        """
        options.correct_receive_timeout()
        options.validate()

        self.options = options
        self.log = logger if logger is not None else log
        self.context = SessionContext.from_options(options)

        if transport is None:
            from pywinrs.transport import build_transport

            transport = build_transport(options)
        self.transport = transport
        self.transport.receive_timeout = self.context.receive_timeout

        self._shells: typing.Dict[str, _Shell] = {}
        self._timeout = to_iso8601_duration(self.context.operation_timeout)

    @property
    def endpoint(self) -> str:
        return self.context.endpoint

    @property
    def timeout(self) -> str:
        return self._timeout

    def set_timeout(self, operation_timeout: int, receive_timeout: typing.Optional[int] = None) -> str:
        """
        Sets the wsman:OperationTimeout of every later request and the read
        timeout of the transport.

        :param operation_timeout: The operation timeout in seconds
        :param receive_timeout: The transport read timeout in seconds,
            defaults to operation_timeout + 10 and is raised to that when it
            is lower than operation_timeout
        :return: The ISO 8601 duration of the operation timeout
        """
        check_integer_above("operation_timeout", operation_timeout)
        if receive_timeout is None:
            receive_timeout = operation_timeout + 10
        else:
            check_integer_above("receive_timeout", receive_timeout)

        if receive_timeout < operation_timeout:
            self.log.debug(
                "Raising receive_timeout %d to operation_timeout %d + 10 seconds",
                receive_timeout,
                operation_timeout,
            )
            receive_timeout = operation_timeout + 10

        self.context.operation_timeout = operation_timeout
        self.context.receive_timeout = receive_timeout
        self.transport.receive_timeout = self.context.receive_timeout
        self._timeout = to_iso8601_duration(operation_timeout)
        return self._timeout

    def set_max_envelope_size(self, size: int) -> None:
        self.context.max_envelope_size = size

    def set_locale(self, locale: str) -> None:
        self.context.locale = locale

    def open_shell(self, options: typing.Optional[ShellOptions] = None) -> str:
        """
        Creates a remote shell.

        :param options: The ShellOptions of the shell
        :return: The ShellId assigned by the server
        """
        options = options if options is not None else ShellOptions()
        self.log.debug("Opening remote shell on %s", self.endpoint)
        rsp = NAMESPACES["rsp"]

        shell = ET.Element("{%s}Shell" % rsp)
        ET.SubElement(shell, "{%s}InputStreams" % rsp).text = options.input_streams
        ET.SubElement(shell, "{%s}OutputStreams" % rsp).text = options.output_streams

        if options.working_directory is not None:
            ET.SubElement(shell, "{%s}WorkingDirectory" % rsp).text = options.working_directory

        if options.idle_timeout is not None:
            ET.SubElement(shell, "{%s}IdleTimeOut" % rsp).text = to_iso8601_duration(options.idle_timeout)

        if options.environment is not None:
            env = ET.SubElement(shell, "{%s}Environment" % rsp)
            for key, value in options.environment.items():
                ET.SubElement(env, "{%s}Variable" % rsp, Name=str(key)).text = str(value)

        option_set = OptionSet()
        if options.no_profile is not None:
            option_set.add_option("WINRS_NOPROFILE", _option_value(options.no_profile))
        option_set.add_option("WINRS_CODEPAGE", options.codepage)

        # validate the code page before the shell exists on the remote host
        decoder = OutputDecoder(options.codepage)

        headers = [resource_uri(options.resource_uri), action_create(), option_set.to_header()]

        response = self._invoke(headers, shell, "Create")

        shell_id_element = response.find(".//*[@Name='ShellId']")
        if shell_id_element is None:
            shell_id_element = response.find("s:Body/rsp:Shell/rsp:ShellId", namespaces=NAMESPACES)
        if shell_id_element is None or not shell_id_element.text:
            raise MalformedResponseError("ShellId", "Create")

        shell_id = shell_id_element.text
        info = _Shell(options.resource_uri, decoder)
        info.state = ShellState.OPEN
        self._shells[shell_id] = info
        self.log.debug("Remote shell %s is open on %s", shell_id, self.endpoint)

        return shell_id

    @contextlib.contextmanager
    def shell(self, options: typing.Optional[ShellOptions] = None) -> typing.Iterator[str]:
        shell_id = self.open_shell(options)
        try:
            yield shell_id
        finally:
            self.close_shell(shell_id)

    def run_command(
        self,
        shell_id: str,
        command: str,
        arguments: typing.Optional[typing.List[str]] = None,
        console_mode_stdin: bool = True,
        skip_cmd_shell: bool = False,
    ) -> str:
        """
        Starts a command in an open shell.

        :param shell_id: The ShellId from open_shell()
        :param command: The command line to run
        :param arguments: Arguments passed to command, each as its own
            rsp:Arguments element
        :param console_mode_stdin: The WINRS_CONSOLEMODE_STDIN setting
        :param skip_cmd_shell: The WINRS_SKIP_CMD_SHELL setting, the command is
            not quoted when True
        :return: The CommandId assigned by the server
        """
        self._get_shell(shell_id, "Command")
        rsp = NAMESPACES["rsp"]

        option_set = OptionSet()
        option_set.add_option("WINRS_CONSOLEMODE_STDIN", _option_value(console_mode_stdin))
        option_set.add_option("WINRS_SKIP_CMD_SHELL", _option_value(skip_cmd_shell))

        command_line = ET.Element("{%s}CommandLine" % rsp, CommandId=str(uuid.uuid4()).upper())
        ET.SubElement(command_line, "{%s}Command" % rsp).text = command if skip_cmd_shell else '"%s"' % command
        for argument in arguments or []:
            ET.SubElement(command_line, "{%s}Arguments" % rsp).text = argument

        headers = [
            self._resource_uri(shell_id),
            action_command(),
            option_set.to_header(),
            selector_shell_id(shell_id),
        ]
        response = self._invoke(headers, command_line, "Command")
        return self._parse_command_id(response)

    @contextlib.contextmanager
    def command(
        self,
        shell_id: str,
        command: str,
        arguments: typing.Optional[typing.List[str]] = None,
        console_mode_stdin: bool = True,
        skip_cmd_shell: bool = False,
    ) -> typing.Iterator[str]:
        command_id = self.run_command(
            shell_id,
            command,
            arguments=arguments,
            console_mode_stdin=console_mode_stdin,
            skip_cmd_shell=skip_cmd_shell,
        )
        try:
            yield command_id
        finally:
            self.cleanup_command(shell_id, command_id)

    def run_pipeline(self, shell_id: str, script: str) -> str:
        """
        Starts a PowerShell pipeline in a shell opened against the PowerShell
        resource URI. The script is sent as a CREATE_PIPELINE message.

        :param shell_id: The ShellId from open_shell()
        :param script: The PowerShell script to run
        :return: The CommandId assigned by the server
        """
        self._get_shell(shell_id, "Command")
        rsp = NAMESPACES["rsp"]

        command_id = str(uuid.uuid4()).upper()
        fragment = encode_fragment(
            shell_id,
            command_id,
            MessageType.CREATE_PIPELINE,
            create_pipeline_payload(script),
        )

        command_line = ET.Element("{%s}CommandLine" % rsp, CommandId=command_id)
        ET.SubElement(command_line, "{%s}Command" % rsp)
        ET.SubElement(command_line, "{%s}Arguments" % rsp).text = to_unicode(base64.b64encode(fragment))

        headers = [self._resource_uri(shell_id), action_command(), selector_shell_id(shell_id)]
        response = self._invoke(headers, command_line, "Command")
        return self._parse_command_id(response)

    def write_stdin(
        self,
        shell_id: str,
        command_id: str,
        data: typing.Union[str, bytes],
        end: typing.Optional[bool] = None,
    ) -> bool:
        self._get_shell(shell_id, "Send")
        rsp = NAMESPACES["rsp"]

        send = ET.Element("{%s}Send" % rsp)
        stream = ET.SubElement(send, "{%s}Stream" % rsp, Name="stdin", CommandId=command_id)
        if end is not None:
            stream.attrib["End"] = str(end).lower()
        stream.text = to_unicode(base64.b64encode(to_bytes(data)))

        headers = [self._resource_uri(shell_id), action_send(), selector_shell_id(shell_id)]
        self._invoke(headers, send, "Send")
        return True

    def get_command_output(
        self,
        shell_id: str,
        command_id: str,
        callback: typing.Optional[typing.Callable[[typing.Optional[str], typing.Optional[str]], None]] = None,
        desired_stream: str = "stdout",
    ) -> Output:
        """
        Polls the output of a command until the server reports it is done.

        :param shell_id: The ShellId from open_shell()
        :param command_id: The CommandId from run_command()
        :param callback: Called with (stdout, stderr) for every fragment as
            it is received, the stream that is not set is None
        :param desired_stream: The rsp:DesiredStream value
        :return: The Output of the command
        """
        shell = self._get_shell(shell_id, "Receive")
        rsp = NAMESPACES["rsp"]

        option_set = OptionSet()
        option_set.add_option("WSMAN_CMDSHELL_OPTION_KEEPALIVE", "TRUE")

        receive = ET.Element("{%s}Receive" % rsp)
        ET.SubElement(receive, "{%s}DesiredStream" % rsp, CommandId=command_id).text = desired_stream

        headers = [
            self._resource_uri(shell_id),
            action_receive(),
            option_set.to_header(),
            selector_shell_id(shell_id),
        ]
        decoder = shell.decoder if shell is not None else OutputDecoder()
        output = Output()

        previous_state = None
        if shell is not None:
            previous_state = shell.state
            shell.state = ShellState.BUSY

        try:
            while True:
                response = self._receive(headers, receive)

                for stream in response.findall(".//rsp:Stream", namespaces=NAMESPACES):
                    if not stream.text:
                        continue

                    name = stream.attrib.get("Name")
                    if name is None:
                        raise MalformedResponseError("Stream Name", "Receive")

                    fragment = output.append(name, decoder.decode(stream.text))
                    if callback is not None:
                        callback(fragment.stdout, fragment.stderr)

                # Running -> Done, anything else means there is more output
                if response.find(".//*[@State='%s']" % CommandState.DONE) is not None:
                    break
        finally:
            if shell is not None and shell.state == ShellState.BUSY:
                shell.state = previous_state

        exit_code = response.find(".//rsp:ExitCode", namespaces=NAMESPACES)
        if exit_code is None or exit_code.text is None:
            raise MalformedResponseError("ExitCode", "Receive")
        output.exitcode = int(exit_code.text)

        return output

    def cleanup_command(self, shell_id: str, command_id: str) -> bool:
        """
        Sends the terminate signal to a command. A WSManFault returned by the
        server is logged and ignored, transport errors are still raised.
        """
        self._get_shell(shell_id, "Signal")
        rsp = NAMESPACES["rsp"]

        signal = ET.Element("{%s}Signal" % rsp, attrib={"CommandId": command_id})
        ET.SubElement(signal, "{%s}Code" % rsp).text = SignalCode.TERMINATE

        headers = [self._resource_uri(shell_id), action_signal(), selector_shell_id(shell_id)]
        try:
            self._invoke(headers, signal, "Signal")
        except WSManFaultError as err:
            self.log.warning("Failed to terminate command %s in shell %s: %s", command_id, shell_id, err)

        return True

    def close_shell(self, shell_id: str) -> bool:
        shell = self._shells.get(shell_id)
        if shell is not None and shell.state == ShellState.CLOSED:
            return True

        self.log.debug("Closing remote shell %s on %s", shell_id, self.endpoint)
        headers = [self._resource_uri(shell_id), action_delete(), selector_shell_id(shell_id)]
        self._invoke(headers, None, "Delete")

        if shell is not None:
            shell.state = ShellState.CLOSED
        self.log.debug("Remote shell %s closed", shell_id)

        return True

    def run_wql(self, query: str, namespace: str = "root/cimv2/*") -> typing.Dict[str, typing.List[typing.Any]]:
        """
        Runs a WQL query against WMI.

        The result is keyed by the snake case name of each returned element,
        every value is a list even when the server returned a single entry.

        :param query: The WQL query
        :param namespace: The WMI namespace the query is run in
        :return: The items of the EnumerateResponse
        """
        wsen = NAMESPACES["wsen"]
        wsman = NAMESPACES["wsman"]

        enumerate_body = ET.Element("{%s}Enumerate" % wsen)
        ET.SubElement(enumerate_body, "{%s}OptimizeEnumeration" % wsman)
        ET.SubElement(enumerate_body, "{%s}MaxElements" % wsman).text = "32000"
        ET.SubElement(enumerate_body, "{%s}Filter" % wsman, Dialect=WQL_DIALECT).text = query

        response = self._invoke([resource_uri_wmi(namespace), action_enumerate()], enumerate_body, "Enumerate")
        parsed = xmltodict.parse(
            ET.tostring(response, encoding="unicode"),
            xml_attribs=False,
            postprocessor=_wql_postprocessor,
        )

        body = (parsed.get("envelope") or {}).get("body") or {}
        enumerate_response = body.get("enumerate_response") or {}
        items = enumerate_response.get("items") or {}

        # collapse single entries back into a list
        normalised = {}
        for key, value in items.items():
            normalised[key] = value if isinstance(value, list) else [value]

        return normalised

    @contextlib.contextmanager
    def create_executor(self, shell_options: typing.Optional[ShellOptions] = None) -> typing.Iterator["CommandExecutor"]:
        from pywinrs.executor import CommandExecutor

        executor = CommandExecutor(self, shell_options=shell_options)
        executor.open()
        try:
            yield executor
        finally:
            executor.close()

    def _get_shell(self, shell_id: str, action: str) -> typing.Optional[_Shell]:
        shell = self._shells.get(shell_id)
        if shell is not None and shell.state == ShellState.CLOSED:
            raise InvalidShellStateError(shell_id, shell.state, action)

        return shell

    def _resource_uri(self, shell_id: str) -> HeaderFragment:
        shell = self._shells.get(shell_id)
        return resource_uri(shell.resource_uri if shell is not None else ResourceURI.CMD)

    def _parse_command_id(self, response: ET.Element) -> str:
        command_id = response.find("s:Body/rsp:CommandResponse/rsp:CommandId", namespaces=NAMESPACES)
        if command_id is None:
            command_id = response.find(".//rsp:CommandId", namespaces=NAMESPACES)
        if command_id is None or not command_id.text:
            raise MalformedResponseError("CommandId", "Command")

        return command_id.text

    def _receive(self, headers: typing.List[HeaderFragment], body: ET.Element) -> ET.Element:
        while True:
            try:
                return self._invoke(headers, body, "Receive")
            except WSManFaultError as err:
                # If no output is available before the wsman:OperationTimeout
                # expires the server returns this fault and the client should
                # just send another Receive request.
                if str(err.code) != str(WSManFaultCode.OPERATION_TIMEOUT):
                    raise

                self.log.debug("Retrying Receive request after operation timeout fault")

    def _invoke(
        self,
        headers: typing.List[HeaderFragment],
        body: typing.Optional[ET.Element],
        action: str,
    ) -> ET.Element:
        header_set = merge_headers(shared_headers(self.context), *headers)
        message_id = header_set["{%s}MessageID" % NAMESPACES["wsa"]].text
        message = build_envelope([header_set], body)

        self.log.debug("Sending %s request %s: %s", action, message_id, to_unicode(message))
        response = self.transport.send_request(message)
        self.log.debug("Received %s response: %s", action, ET.tostring(response, encoding="unicode"))

        relates_to = response.find("s:Header/wsa:RelatesTo", namespaces=NAMESPACES)
        if relates_to is None:
            raise MalformedResponseError("RelatesTo", action)

        if relates_to.text != message_id:
            raise WinRMError(
                "Received related id does not match related expected message id: Sent: %s, Received: %s"
                % (message_id, relates_to.text)
            )

        return response
