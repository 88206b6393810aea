# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import copy
import logging
import typing
import uuid
import xml.etree.ElementTree as ET

from pywinrs._utils import to_iso8601_duration
from pywinrs.exceptions import WSManFaultError

log = logging.getLogger(__name__)

# [MS-WSMV] 2.2.1 Namespaces
# https://msdn.microsoft.com/en-us/library/ee878420.aspx
NAMESPACES = {
    "s": "http://www.w3.org/2003/05/soap-envelope",
    "xs": "http://www.w3.org/2001/XMLSchema",
    "xsi": "http://www.w3.org/2001/XMLSchema-instance",
    "wsa": "http://schemas.xmlsoap.org/ws/2004/08/addressing",
    "b": "http://schemas.dmtf.org/wbem/wsman/1/cimbinding.xsd",
    "wsman": "http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd",
    "wsmanfault": "http://schemas.microsoft.com/wbem/wsman/1/wsmanfault",
    "wsmv": "http://schemas.microsoft.com/wbem/wsman/1/wsman.xsd",
    "cfg": "http://schemas.microsoft.com/wbem/wsman/1/config",
    "rsp": "http://schemas.microsoft.com/wbem/wsman/1/windows/shell",
    "wsen": "http://schemas.xmlsoap.org/ws/2004/09/enumeration",
    "wst": "http://schemas.xmlsoap.org/ws/2004/09/transfer",
    "xml": "http://www.w3.org/XML/1998/namespace",
}

# Every envelope declares these prefixes on the root element
ENVELOPE_NAMESPACES = ("s", "wsa", "b", "wsen", "wst", "wsman", "wsmv", "rsp", "cfg")

ANONYMOUS_ADDRESS = "http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous"

for _prefix, _uri in NAMESPACES.items():
    ET.register_namespace(_prefix, _uri)


class WSManAction(object):
    # WS-Transfer and WS-Enumeration URIs
    CREATE = "http://schemas.xmlsoap.org/ws/2004/09/transfer/Create"
    DELETE = "http://schemas.xmlsoap.org/ws/2004/09/transfer/Delete"
    ENUMERATE = "http://schemas.xmlsoap.org/ws/2004/09/enumeration/Enumerate"

    # MS-WSMV URIs
    COMMAND = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/Command"
    RECEIVE = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/Receive"
    SEND = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/Send"
    SIGNAL = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/Signal"


class ResourceURI(object):
    CMD = "http://schemas.microsoft.com/wbem/wsman/1/windows/shell/cmd"
    POWERSHELL = "http://schemas.microsoft.com/powershell/Microsoft.PowerShell"
    WMI = "http://schemas.microsoft.com/wbem/wsman/1/wmi"


def _qname(prefix: str, name: str) -> str:
    return "{%s}%s" % (NAMESPACES[prefix], name)


MUST_UNDERSTAND = _qname("s", "mustUnderstand")
XML_LANG = _qname("xml", "lang")


class HeaderElement(object):
    def __init__(
        self,
        name: str,
        text: typing.Optional[str] = None,
        attributes: typing.Optional[typing.Dict[str, str]] = None,
        children: typing.Optional[typing.List["HeaderElement"]] = None,
    ) -> None:
        """
        A single SOAP header element.

        :param name: The Clark notation name of the element, {ns}Name
        :param text: The text value of the element
        :param attributes: Attribute map of the element, keys are also in
            Clark notation when namespaced
        :param children: Ordered list of child HeaderElements
        """
        self.name = name
        self.text = text
        self.attributes = attributes if attributes is not None else {}
        self.children = children if children is not None else []

    def __repr__(self) -> str:
        return "<HeaderElement %s text=%r attributes=%r children=%d>" % (
            self.name,
            self.text,
            self.attributes,
            len(self.children),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HeaderElement):
            return NotImplemented

        return (
            self.name == other.name
            and self.text == other.text
            and self.attributes == other.attributes
            and self.children == other.children
        )

    def merge(self, other: "HeaderElement") -> "HeaderElement":
        """
        Combines two elements with the same name into a new element. The
        attribute maps are merged with other taking precedence on a clash, the
        children of other are appended after ours and the first text value
        that is set is kept.
        """
        if other.name != self.name:
            raise ValueError("Cannot merge header %s with %s" % (other.name, self.name))

        attributes = copy.deepcopy(self.attributes)
        attributes.update(other.attributes)
        text = self.text if self.text is not None else other.text
        children = [copy.deepcopy(c) for c in self.children + other.children]

        return HeaderElement(self.name, text=text, attributes=attributes, children=children)

    def pack(self) -> ET.Element:
        element = ET.Element(self.name, attrib=dict(self.attributes))
        if self.text is not None:
            element.text = str(self.text)

        for child in self.children:
            element.append(child.pack())

        return element


class Headers(object):
    """
    The ordered set of header elements that make up the s:Header of a request.
    Each element name appears only once, adding an element with a name that
    is already present merges the two.
    """

    def __init__(self, elements: typing.Optional[typing.Iterable[HeaderElement]] = None) -> None:
        self._elements: typing.Dict[str, HeaderElement] = {}
        for element in elements or []:
            self.add(element)

    def __iter__(self) -> typing.Iterator[HeaderElement]:
        return iter(self._elements.values())

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, name: object) -> bool:
        return name in self._elements

    def __getitem__(self, name: str) -> HeaderElement:
        return self._elements[name]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented

        return list(self) == list(other)

    def add(self, element: HeaderElement) -> None:
        existing = self._elements.get(element.name)
        if existing is None:
            self._elements[element.name] = copy.deepcopy(element)
        else:
            self._elements[element.name] = existing.merge(element)

    def pack(self) -> ET.Element:
        header = ET.Element(_qname("s", "Header"))
        for element in self:
            header.append(element.pack())

        return header


HeaderFragment = typing.Union[HeaderElement, Headers, typing.Iterable[HeaderElement]]


def merge_headers(*fragments: HeaderFragment) -> Headers:
    """
    Merges header fragments left to right into a single Headers set.

    :param fragments: HeaderElement, Headers or any iterable of HeaderElements
    :return: The merged Headers
    """
    headers = Headers()
    for fragment in fragments:
        if isinstance(fragment, HeaderElement):
            headers.add(fragment)
        else:
            for element in fragment:
                headers.add(element)

    return headers


class _WSManSet(object):
    def __init__(self, element_name: str, child_element_name: str, must_understand: bool) -> None:
        self.element_name = element_name
        self.child_element_name = child_element_name
        self.must_understand = must_understand
        self.values: typing.List[typing.Tuple[str, typing.Any, typing.Dict[str, str]]] = []

    def __str__(self) -> str:
        # can't just str({}) as the ordering is important
        entry_values = []
        for value in self.values:
            entry_values.append("'%s': '%s'" % (value[0], value[1]))

        string_value = "{%s}" % ", ".join(entry_values)
        return string_value

    def __len__(self) -> int:
        return len(self.values)

    def add_option(
        self,
        name: str,
        value: typing.Any,
        attributes: typing.Optional[typing.Dict[str, str]] = None,
    ) -> None:
        attributes = attributes if attributes is not None else {}
        self.values.append((name, value, attributes))

    def to_header(self) -> HeaderElement:
        attributes = {MUST_UNDERSTAND: "true"} if self.must_understand else {}
        children = []
        for key, value, extra in self.values:
            child_attributes = {"Name": key}
            child_attributes.update(extra)
            children.append(
                HeaderElement(_qname("wsman", self.child_element_name), text=str(value), attributes=child_attributes)
            )

        return HeaderElement(_qname("wsman", self.element_name), attributes=attributes, children=children)

    def pack(self) -> ET.Element:
        return self.to_header().pack()


class OptionSet(_WSManSet):
    def __init__(self) -> None:
        super(OptionSet, self).__init__("OptionSet", "Option", True)


class SelectorSet(_WSManSet):
    def __init__(self) -> None:
        super(SelectorSet, self).__init__("SelectorSet", "Selector", False)


class SessionContext(object):
    def __init__(
        self,
        endpoint: str,
        session_id: str,
        operation_timeout: int = 60,
        receive_timeout: int = 70,
        max_envelope_size: int = 153600,
        locale: str = "en-US",
        retry_limit: int = 3,
        retry_delay: int = 10,
    ) -> None:
        """
        The per session values that go into every envelope. One instance is
        owned by a single WinRMService.
        """
        self.endpoint = endpoint
        self.session_id = session_id
        self.operation_timeout = operation_timeout
        self.receive_timeout = receive_timeout
        self.max_envelope_size = max_envelope_size
        self.locale = locale
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay

    @classmethod
    def from_options(cls, options: typing.Any) -> "SessionContext":
        return cls(
            options.endpoint,
            options.session_id,
            operation_timeout=options.operation_timeout,
            receive_timeout=options.receive_timeout,
            max_envelope_size=options.max_envelope_size,
            locale=options.locale,
            retry_limit=options.retry_limit,
            retry_delay=options.retry_delay,
        )


def _action(uri: str) -> HeaderElement:
    return HeaderElement(_qname("wsa", "Action"), text=uri, attributes={MUST_UNDERSTAND: "true"})


def action_create() -> HeaderElement:
    return _action(WSManAction.CREATE)


def action_delete() -> HeaderElement:
    return _action(WSManAction.DELETE)


def action_command() -> HeaderElement:
    return _action(WSManAction.COMMAND)


def action_receive() -> HeaderElement:
    return _action(WSManAction.RECEIVE)


def action_signal() -> HeaderElement:
    return _action(WSManAction.SIGNAL)


def action_send() -> HeaderElement:
    return _action(WSManAction.SEND)


def action_enumerate() -> HeaderElement:
    return _action(WSManAction.ENUMERATE)


def resource_uri(uri: str) -> HeaderElement:
    return HeaderElement(_qname("wsman", "ResourceURI"), text=uri, attributes={MUST_UNDERSTAND: "true"})


def resource_uri_cmd() -> HeaderElement:
    return resource_uri(ResourceURI.CMD)


def resource_uri_powershell() -> HeaderElement:
    return resource_uri(ResourceURI.POWERSHELL)


def resource_uri_wmi(namespace: str = "root/cimv2/*") -> HeaderElement:
    return resource_uri("%s/%s" % (ResourceURI.WMI, namespace))


def selector_shell_id(shell_id: str) -> HeaderElement:
    selector_set = SelectorSet()
    selector_set.add_option("ShellId", shell_id)
    return selector_set.to_header()


def shared_headers(context: SessionContext) -> Headers:
    """
    The headers sent with every request of a session. A new MessageID is
    generated on each call so the result must not be reused across requests.

    :param context: The SessionContext of the session
    :return: Headers with To, ReplyTo, MaxEnvelopeSize, MessageID, Locale,
        DataLocale, SessionId and OperationTimeout
    """
    reply_to = HeaderElement(
        _qname("wsa", "ReplyTo"),
        children=[
            HeaderElement(_qname("wsa", "Address"), text=ANONYMOUS_ADDRESS, attributes={MUST_UNDERSTAND: "true"}),
        ],
    )
    locale_attributes = {MUST_UNDERSTAND: "false", XML_LANG: context.locale}

    return Headers(
        [
            HeaderElement(_qname("wsa", "To"), text=context.endpoint),
            reply_to,
            HeaderElement(
                _qname("wsman", "MaxEnvelopeSize"),
                text=str(context.max_envelope_size),
                attributes={MUST_UNDERSTAND: "true"},
            ),
            HeaderElement(_qname("wsa", "MessageID"), text="uuid:%s" % str(uuid.uuid4()).upper()),
            HeaderElement(_qname("wsman", "Locale"), attributes=dict(locale_attributes)),
            HeaderElement(_qname("wsmv", "DataLocale"), attributes=dict(locale_attributes)),
            HeaderElement(
                _qname("wsmv", "SessionId"),
                text="uuid:%s" % str(context.session_id).upper(),
                attributes={MUST_UNDERSTAND: "false"},
            ),
            HeaderElement(_qname("wsman", "OperationTimeout"), text=to_iso8601_duration(context.operation_timeout)),
        ]
    )


def _used_namespaces(element: ET.Element) -> typing.Set[str]:
    used = set()
    for node in element.iter():
        for name in [node.tag] + list(node.attrib.keys()):
            if name.startswith("{"):
                used.add(name[1:].split("}", 1)[0])

    return used


def build_envelope(
    headers: typing.Iterable[HeaderFragment],
    body: typing.Optional[ET.Element] = None,
) -> bytes:
    """
    Builds the SOAP 1.2 envelope of a request.

    :param headers: The header fragments, merged left to right
    :param body: The element placed in s:Body, an empty s:Body when None
    :return: The UTF-8 encoded envelope with an XML declaration
    """
    envelope = ET.Element(_qname("s", "Envelope"))
    envelope.append(merge_headers(*headers).pack())

    body_element = ET.SubElement(envelope, _qname("s", "Body"))
    if body is not None:
        body_element.append(body)

    # ElementTree only declares the namespaces that are in use, the rest of
    # the fixed set is added manually so each prefix is declared once
    used = _used_namespaces(envelope)
    for prefix in ENVELOPE_NAMESPACES:
        if NAMESPACES[prefix] not in used:
            envelope.set("xmlns:%s" % prefix, NAMESPACES[prefix])

    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_wsman_fault(xml_text: typing.Union[str, bytes, ET.Element]) -> WSManFaultError:
    if isinstance(xml_text, ET.Element):
        xml = xml_text
    else:
        xml = ET.fromstring(xml_text)

    code: typing.Any = None
    reason = None
    machine = None
    provider = None
    provider_path = None
    provider_fault = None

    fault = xml.find("s:Body/s:Fault", namespaces=NAMESPACES)
    if fault is not None:
        code_info = fault.find("s:Code/s:Subcode/s:Value", namespaces=NAMESPACES)
        if code_info is None:
            code_info = fault.find("s:Code/s:Value", namespaces=NAMESPACES)

        if code_info is not None:
            code = code_info.text

        reason_info = fault.find("s:Reason/s:Text", namespaces=NAMESPACES)
        if reason_info is not None:
            reason = reason_info.text

        wsman_fault = fault.find("s:Detail/wsmanfault:WSManFault", namespaces=NAMESPACES)
        if wsman_fault is not None:
            code = wsman_fault.attrib.get("Code", code)
            machine = wsman_fault.attrib.get("Machine")

            message_info = wsman_fault.find("wsmanfault:Message", namespaces=NAMESPACES)
            if message_info is not None:
                # message may still not be set, fall back to the existing
                # reason value from the base soap Fault element
                reason = message_info.text if message_info.text else reason

            provider_info = wsman_fault.find("wsmanfault:Message/wsmanfault:ProviderFault", namespaces=NAMESPACES)
            if provider_info is not None:
                provider = provider_info.attrib.get("provider")
                provider_path = provider_info.attrib.get("path")
                provider_fault = provider_info.text

    # lastly try and cleanup the value of the parameters
    try:
        code = int(code)
    except (TypeError, ValueError):
        pass

    try:
        reason = reason.strip()  # type: ignore[union-attr]
    except AttributeError:
        pass

    try:
        provider_fault = provider_fault.strip()  # type: ignore[union-attr]
    except AttributeError:
        pass

    return WSManFaultError(code, machine, reason, provider, provider_path, provider_fault)
