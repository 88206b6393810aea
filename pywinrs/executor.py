# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import logging
import typing

from pywinrs._utils import to_unicode
from pywinrs.output import Output

if typing.TYPE_CHECKING:
    from pywinrs.service import ShellOptions, WinRMService

log = logging.getLogger(__name__)

OutputCallback = typing.Callable[[typing.Optional[str], typing.Optional[str]], None]


class CommandExecutor(object):
    def __init__(
        self,
        service: "WinRMService",
        shell_options: typing.Optional["ShellOptions"] = None,
    ) -> None:
        """
        Runs commands one after the other in a single remote shell.

        This is an easy to use layer on top of WinRMService. The shell is
        reused between commands and is only recreated once max_commands
        commands have been run in it, the server limits the number of
        commands allowed in a shell.

        :param service: The WinRMService to run the commands with
        :param shell_options: The ShellOptions of the shell that is opened
        """
        self.service = service
        self.shell_options = shell_options
        self.shell_id: typing.Optional[str] = None
        self.command_count = 0
        self.max_commands = service.options.max_commands

    def __enter__(self) -> "CommandExecutor":
        self.open()
        return self

    def __exit__(self, *args: typing.Any, **kwargs: typing.Any) -> None:
        self.close()

    def open(self) -> str:
        if self.shell_id is None:
            self.shell_id = self.service.open_shell(self.shell_options)
            self.command_count = 0

        return self.shell_id

    def close(self) -> None:
        if self.shell_id is None:
            return

        shell_id = self.shell_id
        self.shell_id = None
        self.command_count = 0
        self.service.close_shell(shell_id)

    def run_cmd(
        self,
        command: str,
        arguments: typing.Optional[typing.List[str]] = None,
        callback: typing.Optional[OutputCallback] = None,
    ) -> Output:
        """
        Runs a command and waits for it to finish.

        :param command: The command to run
        :param arguments: Arguments for command
        :param callback: Called with (stdout, stderr) as output is received
        :return: The Output of the command
        """
        shell_id = self._reserve_shell()
        log.info("Executing cmd process '%s'", command)

        with self.service.command(shell_id, command, arguments=arguments) as command_id:
            return self.service.get_command_output(shell_id, command_id, callback=callback)

    def run_powershell_script(
        self,
        script: typing.Union[str, typing.IO[str]],
        callback: typing.Optional[OutputCallback] = None,
    ) -> Output:
        """
        Runs a PowerShell script through powershell.exe -encodedCommand.

        :param script: The script text or a file like object to read it from
        :param callback: Called with (stdout, stderr) as output is received
        :return: The Output of powershell.exe
        """
        if not isinstance(script, str):
            script = script.read()

        encoded_command = to_unicode(base64.b64encode(script.encode("utf-16-le")))
        return self.run_cmd("powershell", ["-encodedCommand", encoded_command], callback=callback)

    def _reserve_shell(self) -> str:
        if self.shell_id is not None and self.command_count >= self.max_commands:
            log.debug("Shell %s has run %d commands, recycling the shell", self.shell_id, self.command_count)
            self.close()

        shell_id = self.open()
        self.command_count += 1
        return shell_id
