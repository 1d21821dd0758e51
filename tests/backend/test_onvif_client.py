"""
Unit tests for the ONVIF SOAP client

Requests are answered by an httpx.MockTransport so envelopes, deadlines and
response parsing can be checked without a camera.
"""

import httpx
import pytest

from errors import (
    MalformedResponseError,
    ProtocolConnectionError,
    ProtocolTimeoutError,
    ValidationError,
)
from integrations.onvif_client import ONVIFClient, PTZ_VELOCITIES, TDS


def make_client(handler, credentials=None, port=80):
    transport = httpx.MockTransport(handler)
    http_client = httpx.AsyncClient(transport=transport)
    return ONVIFClient("192.168.1.64", port, credentials=credentials, http_client=http_client, timeout=2.0)


class TestEnvelope:
    """Tests for SOAP envelope construction"""

    def test_envelope_without_credentials(self):
        """No Security header when no credentials are set"""
        client = ONVIFClient("192.168.1.64")
        payload = client.build_envelope(TDS.GetDeviceInformation())

        assert b"http://www.w3.org/2003/05/soap-envelope" in payload
        assert b"GetDeviceInformation" in payload
        assert b"UsernameToken" not in payload

    def test_envelope_with_digest_token(self, sample_credentials):
        """Credentials add a WS-Security UsernameToken with a password digest"""
        client = ONVIFClient("192.168.1.64", credentials=sample_credentials)
        payload = client.build_envelope(TDS.GetDeviceInformation())

        assert b"UsernameToken" in payload
        assert b"admin" in payload
        assert b"PasswordDigest" in payload
        assert b"Nonce" in payload
        assert b"Created" in payload
        # Digest mode never sends the password itself
        assert b"s3cret" not in payload

    def test_unauthenticated_envelope_skips_token(self, sample_credentials):
        """authenticate=False leaves the header empty even with credentials"""
        client = ONVIFClient("192.168.1.64", credentials=sample_credentials)
        payload = client.build_envelope(TDS.GetSystemDateAndTime(), authenticate=False)
        assert b"UsernameToken" not in payload


class TestCapabilities:
    """Tests for GetCapabilities"""

    @pytest.mark.asyncio
    async def test_capabilities_parsed(self, capabilities_xml):
        """Advertised sections map to their XAddr, others to None"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=capabilities_xml, headers={"content-type": "application/soap+xml"})

        client = make_client(handler)
        caps = await client.get_capabilities()

        assert caps["device"] == "http://192.168.1.64/onvif/device_service"
        assert caps["media"] == "http://192.168.1.64/onvif/Media"
        assert caps["ptz"] == "http://192.168.1.64/onvif/PTZ"
        assert caps["imaging"] is None
        assert caps["events"] is None
        assert requests[0].url.path == "/onvif/device_service"
        assert b"GetCapabilities" in requests[0].content

    @pytest.mark.asyncio
    async def test_capabilities_missing_section_is_malformed(self, soap):
        """A reply without a Capabilities element is malformed"""
        def handler(request):
            return httpx.Response(200, text=soap("<tds:Nothing/>"))

        client = make_client(handler)
        with pytest.raises(MalformedResponseError):
            await client.get_capabilities()

    @pytest.mark.asyncio
    async def test_non_xml_reply_is_malformed(self):
        """Garbage bodies raise MalformedResponseError"""
        def handler(request):
            return httpx.Response(200, text="<<< not xml")

        client = make_client(handler)
        with pytest.raises(MalformedResponseError) as exc_info:
            await client.get_capabilities()
        assert exc_info.value.protocol == "onvif"

    @pytest.mark.asyncio
    async def test_auth_failure_is_connection_error(self):
        """Non-2xx replies raise ProtocolConnectionError with the status"""
        def handler(request):
            return httpx.Response(401, text="Unauthorized")

        client = make_client(handler)
        with pytest.raises(ProtocolConnectionError) as exc_info:
            await client.get_capabilities()
        assert exc_info.value.status_code == 401


class TestTransportErrors:
    """Tests for timeout and connection failure mapping"""

    @pytest.mark.asyncio
    async def test_timeout_mapped(self):
        """httpx timeouts surface as ProtocolTimeoutError"""
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(ProtocolTimeoutError) as exc_info:
            await client.get_device_information()
        assert exc_info.value.target == "192.168.1.64:80"

    @pytest.mark.asyncio
    async def test_refused_mapped(self):
        """Connection errors surface as ProtocolConnectionError"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(ProtocolConnectionError):
            await client.get_device_information()


class TestDeviceInformation:
    """Tests for GetDeviceInformation"""

    @pytest.mark.asyncio
    async def test_device_information(self, device_information_xml, sample_credentials):
        """Manufacturer and model are read from the response"""
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200, text=device_information_xml)

        client = make_client(handler, credentials=sample_credentials)
        info = await client.get_device_information()

        assert info["manufacturer"] == "Hikvision"
        assert info["model"] == "DS-2CD2143G2-I"
        assert info["firmware"] == "V5.7.3"
        assert b"UsernameToken" in bodies[0]


class TestMediaService:
    """Tests for profiles and stream URIs"""

    @pytest.mark.asyncio
    async def test_get_profiles(self, profiles_xml):
        """Profiles are returned with token and name"""
        def handler(request):
            assert request.url.path == "/onvif/Media"
            return httpx.Response(200, text=profiles_xml)

        client = make_client(handler)
        profiles = await client.get_profiles()

        assert profiles == [
            {"token": "Profile_1", "name": "mainStream"},
            {"token": "Profile_2", "name": "subStream"},
        ]

    @pytest.mark.asyncio
    async def test_get_stream_uri(self, stream_uri_xml):
        """The first Uri element is returned with entities decoded"""
        def handler(request):
            assert b"Profile_1" in request.content
            return httpx.Response(200, text=stream_uri_xml)

        client = make_client(handler)
        uri = await client.get_stream_uri("Profile_1")

        assert uri == "rtsp://192.168.1.64:554/Streaming/Channels/101?transportmode=unicast&profile=Profile_1"

    @pytest.mark.asyncio
    async def test_missing_uri_is_empty(self, soap):
        """No Uri element yields an empty string"""
        def handler(request):
            return httpx.Response(200, text=soap("<trt:GetStreamUriResponse/>"))

        client = make_client(handler)
        assert await client.get_stream_uri("Profile_1") == ""


class TestDeviceServiceProbe:
    """Tests for the lightweight ONVIF presence check"""

    @pytest.mark.asyncio
    async def test_soap_reply_counts(self, soap):
        def handler(request):
            return httpx.Response(
                200,
                text=soap("<tds:GetSystemDateAndTimeResponse/>"),
                headers={"content-type": "application/soap+xml; charset=utf-8"},
            )

        client = make_client(handler)
        assert await client.probe_device_service(timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_auth_challenge_counts(self):
        """A 401 challenge still identifies a device service"""
        def handler(request):
            return httpx.Response(401, text="")

        client = make_client(handler)
        assert await client.probe_device_service(timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_html_reply_is_malformed(self):
        """A plain web page on the port is not ONVIF"""
        def handler(request):
            return httpx.Response(200, text="<html>Welcome</html>", headers={"content-type": "text/html"})

        client = make_client(handler)
        with pytest.raises(MalformedResponseError):
            await client.probe_device_service(timeout=1.0)


class TestPTZ:
    """Tests for continuous moves"""

    def test_velocity_table(self):
        """Direction vectors"""
        assert PTZ_VELOCITIES["up"] == (0.0, 0.5, None)
        assert PTZ_VELOCITIES["down"] == (0.0, -0.5, None)
        assert PTZ_VELOCITIES["left"] == (-0.5, 0.0, None)
        assert PTZ_VELOCITIES["right"] == (0.5, 0.0, None)
        assert PTZ_VELOCITIES["stop"] == (0.0, 0.0, 0.0)

    def test_unknown_direction_rejected(self):
        with pytest.raises(ValidationError):
            ONVIFClient.ptz_velocity("sideways")

    def test_zoom_only_on_stop(self):
        """Only the stop command carries a Zoom element"""
        client = ONVIFClient("192.168.1.64")
        move_up = client.build_continuous_move("Profile_1", "up")
        stop = client.build_continuous_move("Profile_1", "stop")

        assert not move_up.xpath("//*[local-name()='Zoom']")
        assert stop.xpath("//*[local-name()='Zoom']")
        pan_tilt = move_up.xpath("//*[local-name()='PanTilt']")[0]
        assert pan_tilt.get("x") == "0.0"
        assert pan_tilt.get("y") == "0.5"

    @pytest.mark.asyncio
    async def test_ptz_move_posts_to_ptz_service(self, soap):
        """ContinuousMove is sent to the PTZ endpoint"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=soap("<tptz:ContinuousMoveResponse/>"))

        client = make_client(handler)
        await client.ptz_move("Profile_1", "left")

        assert requests[0].url.path == "/onvif/PTZ"
        assert b"ContinuousMove" in requests[0].content
        assert b'x="-0.5"' in requests[0].content
