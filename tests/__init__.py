import xml.etree.ElementTree as ET

from pywinrs.wsman import NAMESPACES


def find_text(xml, path):
    element = ET.fromstring(xml).find(path, NAMESPACES)
    return None if element is None else element.text


def body_bytes(xml):
    # the s:Body of a request, used to compare requests that only differ in
    # their headers
    body = ET.fromstring(xml).find("s:Body", NAMESPACES)
    return ET.tostring(body)
