import base64
import re
import warnings

import pytest
import requests
from urllib3.response import HTTPResponse

from pywinrs.exceptions import AuthenticationError
from pywinrs.negotiate import HTTPNegotiateAuth

# Self signed certificates of the same key with a different signature hash
RSA_MD5 = base64.b64decode(
    b"MIIDGzCCAgOgAwIBAgIQJzshhViMG5hLHIJHxa+TcTANBgkqhkiG9w0"
    b"BAQQFADAVMRMwEQYDVQQDDApTRVJWRVIyMDE2MB4XDTE3MDUzMDA4MD"
    b"MxNloXDTE4MDUzMDA4MjMxNlowFTETMBEGA1UEAwwKU0VSVkVSMjAxN"
    b"jCCASIwDQYJKoZIhvcNAQEBBQADggEPADCCAQoCggEBAN9N5GAzI7uq"
    b"AVlI6vUqhY5+EZWCWWGRwR3FT2DEXE5++AiJxXO0i0ZfAkLu7UggtBe"
    b"QwVNkaPD27EYzVUhy1iDo37BrFcLNpfjsjj8wVjaSmQmqvLvrvEh/BT"
    b"C5SBgDrk2+hiMh9PrpJoB3QAMDinz5aW0rEXMKitPBBiADrczyYrliF"
    b"AlEU6pTlKEKDUAeP7dKOBlDbCYvBxKnR3ddVH74I5T2SmNBq5gzkbKP"
    b"nlCXdHLZSh74USu93rKDZQF8YzdTO5dcBreJDJsntyj1o49w9WCt6M7"
    b"+pg6vKvE+tRbpCm7kXq5B9PDi42Nb6//MzNaMYf9V7v5MHapvVSv3+y"
    b"sCAwEAAaNnMGUwDgYDVR0PAQH/BAQDAgWgMB0GA1UdJQQWMBQGCCsGA"
    b"QUFBwMCBggrBgEFBQcDATAVBgNVHREEDjAMggpTRVJWRVIyMDE2MB0G"
    b"A1UdDgQWBBTh4L2Clr9ber6yfY3JFS3wiECL4DANBgkqhkiG9w0BAQQ"
    b"FAAOCAQEA0JK/SL7SP9/nvqWp52vnsxVefTFehThle5DLzagmms/9gu"
    b"oSE2I9XkQIttFMprPosaIZWt7WP42uGcZmoZOzU8kFFYJMfg9Ovyca+"
    b"gnG28jDUMF1E74KrC7uynJiQJ4vPy8ne7F3XJ592LsNJmK577l42gAW"
    b"u08p3TvEJFNHy2dBk/IwZp0HIPr9+JcPf7v0uL6lK930xHJHP56XLzN"
    b"YG8vCMpJFR7wVZp3rXkJQUy3GxyHPJPjS8S43I9j+PoyioWIMEotq2+"
    b"q0IpXU/KeNFkdGV6VPCmzhykijExOMwO6doUzIUM8orv9jYLHXYC+i6"
    b"IFKSb6runxF1MAik+GCSA=="
)

RSA_MD5_HASH = (
    b"\x23\x34\xB8\x47\x6C\xBF\x4E\x6D\xFC\x76\x6A\x5D"
    b"\x5A\x30\xD6\x64\x9C\x01\xBA\xE1\x66\x2A\x5C\x3A"
    b"\x13\x02\xA9\x68\xD7\xC6\xB0\xF6"
)

RSA_SHA1 = base64.b64decode(
    b"MIIDGzCCAgOgAwIBAgIQJg/Mf5sR55xApJRK+kabbTANBgkqhkiG9w0"
    b"BAQUFADAVMRMwEQYDVQQDDApTRVJWRVIyMDE2MB4XDTE3MDUzMDA4MD"
    b"MxNloXDTE4MDUzMDA4MjMxNlowFTETMBEGA1UEAwwKU0VSVkVSMjAxN"
    b"jCCASIwDQYJKoZIhvcNAQEBBQADggEPADCCAQoCggEBALPKwYikjbzL"
    b"Lo6JtS6cyytdMMjSrggDoTnRUKauC5/izoYJd+2YVR5YqnluBJZpoFp"
    b"hkCgFFohUOU7qUsI1SkuGnjI8RmWTrrDsSy62BrfX+AXkoPlXo6IpHz"
    b"HaEPxjHJdUACpn8QVWTPmdAhwTwQkeUutrm3EOVnKPX4bafNYeAyj7/"
    b"AGEplgibuXT4/ehbzGKOkRN3ds/pZuf0xc4Q2+gtXn20tQIUt7t6iwh"
    b"nEWjIgopFL/hX/r5q5MpF6stc1XgIwJjEzqMp76w/HUQVqaYneU4qSG"
    b"f90ANK/TQ3aDbUNtMC/ULtIfHqHIW4POuBYXaWBsqalJL2VL3YYkKTU"
    b"sCAwEAAaNnMGUwDgYDVR0PAQH/BAQDAgWgMB0GA1UdJQQWMBQGCCsGA"
    b"QUFBwMCBggrBgEFBQcDATAVBgNVHREEDjAMggpTRVJWRVIyMDE2MB0G"
    b"A1UdDgQWBBS1jgojcjPu9vqeP1uSKuiIonGwAjANBgkqhkiG9w0BAQU"
    b"FAAOCAQEAKjHL6k5Dv/Zb7dvbYEZyx0wVhjHkCTpT3xstI3+TjfAFsu"
    b"3zMmyFqFqzmr4pWZ/rHc3ObD4pEa24kP9hfB8nmr8oHMLebGmvkzh5h"
    b"0GYc4dIH7Ky1yfQN51hi7/X5iN7jnnBoCJTTlgeBVYDOEBXhfXi3cLT"
    b"u3d7nz2heyNq07gFP8iN7MfqdPZndVDYY82imLgsgar9w5d+fvnYM+k"
    b"XWItNNCUH18M26Obp4Es/Qogo/E70uqkMHost2D+tww/7woXi36X3w/"
    b"D2yBDyrJMJKZLmDgfpNIeCimncTOzi2IhzqJiOY/4XPsVN/Xqv0/dzG"
    b"TDdI11kPLq4EiwxvPanCg=="
)

RSA_SHA1_HASH = (
    b"\x14\xCF\xE8\xE4\xB3\x32\xB2\x0A\x34\x3F\xC8\x40"
    b"\xB1\x8F\x9F\x6F\x78\x92\x6A\xFE\x7E\xC3\xE7\xB8"
    b"\xE2\x89\x69\x61\x9B\x1E\x8F\x3E"
)

RSA_SHA256 = base64.b64decode(
    b"MIIDGzCCAgOgAwIBAgIQWkeAtqoFg6pNWF7xC4YXhTANBgkqhkiG9w0"
    b"BAQsFADAVMRMwEQYDVQQDDApTRVJWRVIyMDE2MB4XDTE3MDUyNzA5MD"
    b"I0NFoXDTE4MDUyNzA5MjI0NFowFTETMBEGA1UEAwwKU0VSVkVSMjAxN"
    b"jCCASIwDQYJKoZIhvcNAQEBBQADggEPADCCAQoCggEBALIPKM5uykFy"
    b"NmVoLyvPSXGk15ZDqjYi3AbUxVFwCkVImqhefLATit3PkTUYFtAT+TC"
    b"AwK2E4lOu1XHM+Tmp2KIOnq2oUR8qMEvfxYThEf1MHxkctFljFssZ9N"
    b"vASDD4lzw8r0Bhl+E5PhR22Eu1Wago5bvIldojkwG+WBxPQv3ZR546L"
    b"MUZNaBXC0RhuGj5w83lbVz75qM98wvv1ekfZYAP7lrVyHxqCTPDomEU"
    b"I45tQQZHCZl5nRx1fPCyyYfcfqvFlLWD4Q3PZAbnw6mi0MiWJbGYKME"
    b"1XGicjqyn/zM9XKA1t/JzChS2bxf6rsyA9I7ibdRHUxsm1JgKry2jfW"
    b"0CAwEAAaNnMGUwDgYDVR0PAQH/BAQDAgWgMB0GA1UdJQQWMBQGCCsGA"
    b"QUFBwMCBggrBgEFBQcDATAVBgNVHREEDjAMggpTRVJWRVIyMDE2MB0G"
    b"A1UdDgQWBBQabLGWg1sn7AXPwYPyfE0ER921ZDANBgkqhkiG9w0BAQs"
    b"FAAOCAQEAnRohyl6ZmOsTWCtxOJx5A8yr//NweXKwWWmFQXRmCb4bMC"
    b"xhD4zqLDf5P6RotGV0I/SHvqz+pAtJuwmr+iyAF6WTzo3164LCfnQEu"
    b"psfrrfMkf3txgDwQkA0oPAw3HEwOnR+tzprw3Yg9x6UoZEhi4XqP9AX"
    b"R49jU92KrNXJcPlz5MbkzNo5t9nr2f8q39b5HBjaiBJxzdM1hxqsbfD"
    b"KirTYbkUgPlVOo/NDmopPPb8IX8ubj/XETZG2jixD0zahgcZ1vdr/iZ"
    b"+50WSXKN2TAKBO2fwoK+2/zIWrGRxJTARfQdF+fGKuj+AERIFNh88HW"
    b"xSDYjHQAaFMcfdUpa9GGQ=="
)

RSA_SHA256_HASH = (
    b"\x99\x6F\x3E\xEA\x81\x2C\x18\x70\xE3\x05\x49\xFF"
    b"\x9B\x86\xCD\x87\xA8\x90\xB6\xD8\xDF\xDF\x4A\x81"
    b"\xBE\xF9\x67\x59\x70\xDA\xDB\x26"
)



class TestTokenHelpers(object):
    def test_select_scheme(self):
        response = requests.Response()
        response.headers["www-authenticate"] = "Negotiate"
        assert HTTPNegotiateAuth._select_scheme(response) == "Negotiate"

    def test_select_scheme_kerberos(self):
        response = requests.Response()
        response.headers["www-authenticate"] = "Kerberos, Basic Realm='WSMan'"
        assert HTTPNegotiateAuth._select_scheme(response) == "Kerberos"

    def test_select_scheme_preference(self):
        response = requests.Response()
        response.headers["www-authenticate"] = "Kerberos, Negotiate"
        assert HTTPNegotiateAuth._select_scheme(response) == "Negotiate"

    def test_scheme_not_offered(self):
        response = requests.Response()
        response.headers["www-authenticate"] = "CredSSP"

        expected = (
            "The server did not offer any of the authentication schemes Negotiate, Kerberos, "
            "WWW-Authenticate: 'CredSSP'"
        )
        with pytest.raises(AuthenticationError, match=re.escape(expected)):
            HTTPNegotiateAuth._select_scheme(response)

    def test_scheme_no_header(self):
        response = requests.Response()

        with pytest.raises(AuthenticationError, match="WWW-Authenticate: ''"):
            HTTPNegotiateAuth._select_scheme(response)

    def test_encode_token(self):
        assert HTTPNegotiateAuth._encode_token("Negotiate", b"abc") == b"Negotiate YWJj"

    @pytest.mark.parametrize("header", ["Kerberos", "Negotiate", "NTLM"])
    def test_decode_token(self, header):
        response = requests.Response()
        response.headers["www-authenticate"] = "%s YWJj" % header
        assert HTTPNegotiateAuth._decode_token(response) == b"abc"

    def test_decode_token_no_header(self):
        response = requests.Response()
        assert HTTPNegotiateAuth._decode_token(response) is None

    def test_decode_token_different_auth(self):
        response = requests.Response()
        response.headers["www-authenticate"] = "Fake YWJj"
        assert HTTPNegotiateAuth._decode_token(response) is None


class TestCertificateHash(object):
    @pytest.mark.parametrize(
        "certificate, expected",
        [
            # MD5 and SHA1 signatures are upgraded to SHA256
            (RSA_MD5, RSA_MD5_HASH),
            (RSA_SHA1, RSA_SHA1_HASH),
            (RSA_SHA256, RSA_SHA256_HASH),
        ],
        ids=["md5", "sha1", "sha256"],
    )
    def test_certificate_hash(self, certificate, expected):
        assert HTTPNegotiateAuth._certificate_hash(certificate) == expected


class TestChannelBindings(object):
    def test_not_urllib3_response(self, mocker):
        response = mocker.MagicMock()

        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            actual = HTTPNegotiateAuth._channel_binding_data(response)

        assert actual is None
        assert str(w[-1].message) == (
            "Cannot get the server certificate for channel binding from a MagicMock response, only urllib3 "
            "responses are supported"
        )

    def test_no_peer_cert(self, mocker):
        mock_socket = mocker.MagicMock()
        mock_socket.getpeercert.side_effect = AttributeError

        raw_response = HTTPResponse()
        raw_response._fp = mocker.MagicMock()
        raw_response._fp.fp.raw._sock = mock_socket

        response = mocker.MagicMock()
        response.raw = raw_response

        assert HTTPNegotiateAuth._channel_binding_data(response) is None

    def test_with_peer_cert(self, mocker):
        mock_socket = mocker.MagicMock()
        mock_socket.getpeercert.return_value = RSA_SHA256

        raw_response = HTTPResponse()
        raw_response._fp = mocker.MagicMock()
        raw_response._fp.fp.raw._sock = mock_socket

        response = mocker.MagicMock()
        response.raw = raw_response

        actual = HTTPNegotiateAuth._channel_binding_data(response)
        assert actual == b"tls-server-end-point:" + RSA_SHA256_HASH


class TestHTTPNegotiateAuth(object):
    def test_adds_hook(self):
        auth = HTTPNegotiateAuth("user", "pass")
        request = requests.Request("POST", "http://server:5985/wsman").prepare()

        actual = auth(request)

        assert actual.headers["Connection"] == "Keep-Alive"
        assert auth.response_hook in actual.hooks["response"]

    def test_response_hook_not_401(self, mocker):
        mock_client = mocker.patch("spnego.client")
        response = mocker.MagicMock()
        response.status_code = 200

        assert HTTPNegotiateAuth("user", "pass").response_hook(response) is response
        assert mock_client.call_count == 0

    def test_response_hook_exchanges_tokens(self, mocker):
        context = mocker.MagicMock()
        context.step.side_effect = [b"token1", None]
        mock_client = mocker.patch("spnego.client", return_value=context)

        final_response = mocker.MagicMock()
        final_response.status_code = 200
        final_response.headers = {"www-authenticate": "Negotiate YWJj"}

        response = mocker.MagicMock()
        response.status_code = 401
        response.url = "http://server:5985/wsman"
        response.headers = {"www-authenticate": "Negotiate"}
        response.request = requests.Request("POST", response.url).prepare()
        response.connection.send.return_value = final_response

        auth = HTTPNegotiateAuth("user", "pass", send_cbt=False)
        actual = auth.response_hook(response)

        assert actual is final_response
        assert auth.contexts["server"] is context
        assert auth.schemes_used["server"] == "negotiate"
        assert context.step.call_args_list[1][0] == (b"abc",)

        sent_request = response.connection.send.call_args[0][0]
        assert sent_request.headers["Authorization"] == b"Negotiate dG9rZW4x"

        client_kwargs = mock_client.call_args[1]
        assert client_kwargs["hostname"] == "server"
        assert client_kwargs["service"] == "HTTP"
        assert client_kwargs["protocol"] == "negotiate"
        assert client_kwargs["channel_bindings"] is None
        assert client_kwargs["options"] == 0

    def test_response_hook_unsupported_auth(self, mocker):
        response = mocker.MagicMock()
        response.status_code = 401
        response.headers = {"www-authenticate": "Basic"}

        with pytest.raises(AuthenticationError):
            HTTPNegotiateAuth("user", "pass").response_hook(response)
