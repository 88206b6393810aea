import os
import uuid
import xml.etree.ElementTree as ET

import pytest
import yaml

from pywinrs.config import ConnectionOptions
from pywinrs.exceptions import WinRMTransportError
from pywinrs.service import WinRMService
from pywinrs.wsman import NAMESPACES, parse_wsman_fault

NIL_UUID = "00000000-0000-0000-0000-000000000000"

RESPONSE_TEMPLATE = (
    '<s:Envelope xml:lang="en-US" '
    'xmlns:s="http://www.w3.org/2003/05/soap-envelope" '
    'xmlns:a="http://schemas.xmlsoap.org/ws/2004/08/addressing" '
    'xmlns:x="http://schemas.xmlsoap.org/ws/2004/09/transfer" '
    'xmlns:n="http://schemas.xmlsoap.org/ws/2004/09/enumeration" '
    'xmlns:w="http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd" '
    'xmlns:p="http://schemas.microsoft.com/wbem/wsman/1/wsman.xsd" '
    'xmlns:rsp="http://schemas.microsoft.com/wbem/wsman/1/windows/shell">'
    "<s:Header>"
    "<a:Action>%(action)s</a:Action>"
    "<a:MessageID>uuid:5A3D9B1E-7C41-4F28-9E6B-0D2C8A7F1B33</a:MessageID>"
    "<a:To>http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous</a:To>"
    "%(relates_to)s"
    "</s:Header>"
    "<s:Body>%(body)s</s:Body>"
    "</s:Envelope>"
)

FAULT_BODY = (
    "<s:Fault>"
    "<s:Code><s:Value>s:Receiver</s:Value><s:Subcode><s:Value>%(subcode)s</s:Value></s:Subcode></s:Code>"
    '<s:Reason><s:Text xml:lang="">%(message)s</s:Text></s:Reason>'
    "<s:Detail>"
    '<f:WSManFault xmlns:f="http://schemas.microsoft.com/wbem/wsman/1/wsmanfault" Code="%(code)s" '
    'Machine="fakehost">'
    "<f:Message>%(message)s</f:Message>"
    "</f:WSManFault>"
    "</s:Detail>"
    "</s:Fault>"
)


class TransportFake(object):
    def __init__(self, test_name):
        """
        Replays the canned responses in responses/<test_name>.yml. Every
        request that is sent is recorded so the test can inspect it.

        Each message in the yml can have
            action: The suffix of the wsa:Action the request must have
            body: The XML placed in the response s:Body
            fault: code, subcode and message of a WSManFault to raise
            transport_error: code and text of a WinRMTransportError to raise
            relates_to: Overrides the wsa:RelatesTo value, set to null to
                omit the element
        """
        self.endpoint = "http://fakehost:5985/wsman"
        self.receive_timeout = None
        self.requests = []

        meta_path = os.path.join(os.path.dirname(__file__), "responses/%s.yml" % test_name)
        if not os.path.exists(meta_path):
            raise Exception("Test metadata yml file does not exist at %s" % meta_path)

        with open(meta_path, "rb") as o:
            self._messages = yaml.load(o, Loader=yaml.SafeLoader)["messages"]
        self._test_name = test_name
        self._msg_counter = 0

    @property
    def remaining(self):
        return len(self._messages) - self._msg_counter

    def send_request(self, message):
        # the envelope must always be sent as a byte string
        assert isinstance(message, bytes)
        self.requests.append(message)

        assert self._msg_counter < len(self._messages), "Unexpected request %d for test %s" % (
            self._msg_counter,
            self._test_name,
        )
        current_msg = self._messages[self._msg_counter]
        self._msg_counter += 1

        request = ET.fromstring(message)
        action = request.find("s:Header/wsa:Action", NAMESPACES).text
        message_id = request.find("s:Header/wsa:MessageID", NAMESPACES).text
        expected_action = current_msg.get("action")
        if expected_action is not None:
            assert action.endswith("/%s" % expected_action), "Message %d for test %s sent %s, expected %s" % (
                self._msg_counter - 1,
                self._test_name,
                action,
                expected_action,
            )

        relates_to = current_msg.get("relates_to", message_id)
        relates_to_xml = "" if relates_to is None else "<a:RelatesTo>%s</a:RelatesTo>" % relates_to

        if "transport_error" in current_msg:
            error = current_msg["transport_error"]
            raise WinRMTransportError("http", error["code"], error.get("text", ""))

        if "fault" in current_msg:
            fault = dict(current_msg["fault"])
            fault.setdefault("subcode", "w:InternalError")
            fault.setdefault("message", "")
            response = RESPONSE_TEMPLATE % {
                "action": "http://schemas.dmtf.org/wbem/wsman/1/wsman/fault",
                "relates_to": relates_to_xml,
                "body": FAULT_BODY % fault,
            }
            raise parse_wsman_fault(response)

        response = RESPONSE_TEMPLATE % {
            "action": "%sResponse" % action,
            "relates_to": relates_to_xml,
            "body": current_msg.get("body") or "",
        }
        return ET.fromstring(response)


@pytest.fixture(scope="function")
def winrm_service(request, monkeypatch):
    """
    A WinRMService wired to a TransportFake, parametrize indirectly with the
    name of the yml file in responses to replay.
    """

    # Mock out UUID's so the generated ids are known
    def mockuuid():
        return uuid.UUID(NIL_UUID)

    monkeypatch.setattr(uuid, "uuid4", mockuuid)

    transport = TransportFake(request.param)
    options = ConnectionOptions.create_with_defaults(
        endpoint=transport.endpoint,
        user="username",
        password="password",
    )
    service = WinRMService(options, transport=transport)

    yield service

    assert transport.remaining == 0, "Not all the canned responses for %s were used" % request.param
