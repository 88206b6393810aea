# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import typing


class WSManFaultCode(object):
    """
    [MS-WSMV] 3.1.4.14 Receive

    Fault codes the protocol engine needs to recognise.
    """

    # No output was available before the wsman:OperationTimeout expired, the
    # client should just send the Receive request again.
    OPERATION_TIMEOUT = 2150858793


class WinRMError(Exception):
    # Base WinRM Error
    pass


class AuthenticationError(WinRMError):
    # Used when the user failed to authenticate
    pass


class ConfigurationError(WinRMError):
    # The connection options are missing a field or a field has a bad value
    pass


class UnsupportedTransportError(ConfigurationError):
    # The transport kind requested has no matching transport
    pass


class MalformedResponseError(WinRMError):
    # An element the protocol guarantees is present was missing in a response

    @property
    def element(self) -> str:
        return self.args[0]

    @property
    def action(self) -> str:
        return self.args[1]

    @property
    def message(self) -> str:
        return "Expected element '%s' was not found in the response to %s" % (self.element, self.action)

    def __str__(self) -> str:
        return self.message


class InvalidShellStateError(WinRMError):
    # An operation was attempted on a shell that is not in a usable state

    @property
    def shell_id(self) -> str:
        return self.args[0]

    @property
    def current_state(self) -> str:
        return self.args[1]

    @property
    def action(self) -> str:
        return self.args[2]

    @property
    def message(self) -> str:
        return "Cannot '%s' on shell %s in the current state '%s'" % (self.action, self.shell_id, self.current_state)

    def __str__(self) -> str:
        return self.message


class WinRMTransportError(WinRMError):
    # An error occurred during the transport stage

    @property
    def protocol(self) -> str:
        return self.args[0]

    @property
    def code(self) -> int:
        return self.args[1]

    @property
    def response_text(self) -> str:
        return self.args[2]

    @property
    def message(self) -> str:
        return "Bad %s response returned from the server. Code: %d, Content: '%s'" % (
            self.protocol.upper(),
            self.code,
            self.response_text,
        )

    def __str__(self) -> str:
        return self.message


class WSManFaultError(WinRMError):
    # Contains the WSManFault information if a WSManFault was received

    @property
    def code(self) -> typing.Optional[typing.Union[int, str]]:
        return self.args[0]

    @property
    def machine(self) -> typing.Optional[str]:
        return self.args[1]

    @property
    def reason(self) -> typing.Optional[str]:
        return self.args[2]

    @property
    def provider(self) -> typing.Optional[str]:
        return self.args[3]

    @property
    def provider_path(self) -> typing.Optional[str]:
        return self.args[4]

    @property
    def provider_fault(self) -> typing.Optional[str]:
        return self.args[5]

    @property
    def message(self) -> str:
        error_details = []
        if self.code:
            error_details.append("Code: %s" % self.code)

        if self.machine:
            error_details.append("Machine: %s" % self.machine)

        if self.reason:
            error_details.append("Reason: %s" % self.reason)

        if self.provider:
            error_details.append("Provider: %s" % self.provider)

        if self.provider_path:
            error_details.append("Provider Path: %s" % self.provider_path)

        if self.provider_fault:
            error_details.append("Provider Fault: %s" % self.provider_fault)

        if len(error_details) == 0:
            error_details.append("No details returned by the server")

        return "Received a WSManFault message. (%s)" % ", ".join(error_details)

    def __str__(self) -> str:
        return self.message
