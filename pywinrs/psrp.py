# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import logging
import random
import struct
import typing
import uuid
import xml.etree.ElementTree as ET

from pywinrs._utils import to_bytes

log = logging.getLogger(__name__)

UTF8_BOM = b"\xef\xbb\xbf"


class Destination(object):
    # The destination of a PSRP message
    CLIENT = 0x00000001
    SERVER = 0x00000002


class MessageType(object):
    """
    [MS-PSRP] 2.2.1 PowerShell Remoting Protocol Message - MessageType
    https://msdn.microsoft.com/en-us/library/dd303832.aspx
    """

    SESSION_CAPABILITY = 0x00010002
    INIT_RUNSPACEPOOL = 0x00010004
    CREATE_PIPELINE = 0x00021006
    PIPELINE_INPUT = 0x00030002
    END_OF_PIPELINE_INPUT = 0x00030003
    PIPELINE_OUTPUT = 0x00041004
    ERROR_RECORD = 0x00041005
    PIPELINE_STATE = 0x00041006


class FragmentFlags(object):
    START = 0x1
    END = 0x2


def uuid_to_bytes(value: typing.Optional[typing.Union[str, uuid.UUID]]) -> bytes:
    """
    Converts a UUID to the GUID wire layout. The first 3 groups are little
    endian and the last 2 are kept in the order they are written.

    :param value: The UUID or its string form, None is the nil UUID
    :return: The 16 byte GUID
    """
    if value is None:
        return b"\x00" * 16

    if not isinstance(value, uuid.UUID):
        value = uuid.UUID(str(value))

    # .NET stores uuids/guids in bytes in the little endian form
    return value.bytes_le


def bytes_to_uuid(data: bytes) -> uuid.UUID:
    return uuid.UUID(bytes_le=data)


def _message_type_value(message_type: typing.Union[int, str]) -> int:
    if isinstance(message_type, int):
        return message_type

    return int(message_type, 16)


def encode_fragment(
    shell_id: typing.Optional[typing.Union[str, uuid.UUID]],
    command_id: typing.Optional[typing.Union[str, uuid.UUID]],
    message_type: typing.Union[int, str],
    payload: typing.Union[str, bytes],
) -> bytes:
    """
    Builds a single complete PSRP fragment that contains one message.

    Fragment header
        4 zero bytes, 1 random byte, 8 zero bytes, flags (start and end), the
        blob length as a big endian uint32
    Blob
        destination and message type as little endian uint32 values, the
        shell and command GUIDs, a UTF-8 BOM then the UTF-8 payload

    :param shell_id: The ShellId the message is for
    :param command_id: The CommandId or pipeline id, None for the nil UUID
    :param message_type: The MessageType as an int or a hex string
    :param payload: The CLIXML of the message
    :return: The fragment bytes
    """
    blob = struct.pack("<I", Destination.SERVER)
    blob += struct.pack("<I", _message_type_value(message_type))
    blob += uuid_to_bytes(shell_id)
    blob += uuid_to_bytes(command_id)
    blob += UTF8_BOM
    blob += to_bytes(payload)

    fragment = b"\x00" * 4
    fragment += struct.pack("B", random.randint(0, 255))
    fragment += b"\x00" * 8
    fragment += struct.pack("B", FragmentFlags.START | FragmentFlags.END)
    fragment += struct.pack(">I", len(blob))
    fragment += blob

    log.debug("Packed PSRP fragment of type 0x%08x with %d blob bytes", _message_type_value(message_type), len(blob))
    return fragment


class _RefIds(object):
    def __init__(self) -> None:
        self.obj = 0
        self.type_names: typing.Dict[str, int] = {}

    def next_obj(self) -> str:
        ref_id = self.obj
        self.obj += 1
        return str(ref_id)


def _obj(parent: ET.Element, refs: _RefIds, name: typing.Optional[str] = None) -> ET.Element:
    attrib = {"N": name} if name else {}
    attrib["RefId"] = refs.next_obj()
    return ET.SubElement(parent, "Obj", attrib=attrib)


def _type_names(parent: ET.Element, refs: _RefIds, names: typing.List[str]) -> None:
    key = names[0]
    ref_id = refs.type_names.get(key)
    if ref_id is not None:
        ET.SubElement(parent, "TNRef", RefId=str(ref_id))
        return

    ref_id = len(refs.type_names)
    refs.type_names[key] = ref_id
    tn = ET.SubElement(parent, "TN", RefId=str(ref_id))
    for name in names:
        ET.SubElement(tn, "T").text = name


def _enum(parent: ET.Element, refs: _RefIds, name: str, type_name: str, label: str, value: int) -> None:
    element = _obj(parent, refs, name)
    _type_names(element, refs, [type_name, "System.Enum", "System.ValueType", "System.Object"])
    ET.SubElement(element, "ToString").text = label
    ET.SubElement(element, "I32").text = str(value)


def _bool(parent: ET.Element, name: str, value: bool) -> None:
    ET.SubElement(parent, "B", N=name).text = str(value).lower()


def create_pipeline_payload(script: str) -> str:
    """
    [MS-PSRP] 2.2.2.10 CREATE_PIPELINE Message
    https://msdn.microsoft.com/en-us/library/dd340567.aspx

    Creates the CLIXML of a pipeline with a single script command. The
    pipeline takes no input, uses the unknown apartment state and has no
    host.

    :param script: The script to run
    :return: The CLIXML string
    """
    refs = _RefIds()
    list_type = "System.Collections.Generic.List`1[[System.Management.Automation.PSObject, System.Management.Automation]]"
    result_type = "System.Management.Automation.Runspaces.PipelineResultTypes"

    root = _obj(ET.Element("root"), refs)
    ms = ET.SubElement(root, "MS")

    powershell = ET.SubElement(_obj(ms, refs, "PowerShell"), "MS")
    commands = _obj(powershell, refs, "Cmds")
    _type_names(commands, refs, [list_type, "System.Object"])
    command = ET.SubElement(_obj(ET.SubElement(commands, "LST"), refs), "MS")
    ET.SubElement(command, "S", N="Cmd").text = script
    _bool(command, "IsScript", True)
    ET.SubElement(command, "Nil", N="UseLocalScope")
    for merge in ["MergeMyResult", "MergeToResult", "MergePreviousResults"]:
        _enum(command, refs, merge, result_type, "None", 0)

    arguments = _obj(command, refs, "Args")
    _type_names(arguments, refs, [list_type, "System.Object"])
    ET.SubElement(arguments, "LST")

    _bool(powershell, "IsNested", False)
    ET.SubElement(powershell, "Nil", N="History")
    _bool(powershell, "RedirectShellErrorOutputPipe", True)

    _bool(ms, "NoInput", True)
    _enum(ms, refs, "ApartmentState", "System.Threading.ApartmentState", "Unknown", 2)
    _enum(ms, refs, "RemoteStreamOptions", "System.Management.Automation.RemoteStreamOptions", "0", 0)
    _bool(ms, "AddToHistory", True)

    host_info = ET.SubElement(_obj(ms, refs, "HostInfo"), "MS")
    for name in ["_isHostNull", "_isHostUINull", "_isHostRawUINull", "_useRunspaceHost"]:
        _bool(host_info, name, True)

    _bool(ms, "IsNested", False)

    return ET.tostring(root, encoding="unicode")
