"""
Pytest configuration and fixtures for Facility Sentinel tests.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep the default engine away from the working directory
_db_dir = tempfile.mkdtemp(prefix="sentinel-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(_db_dir) / 'sentinel-test.db'}")
os.environ.setdefault("DISCOVERY_ENVIRONMENT_CHECK", "false")

# Add backend to path for imports
backend_path = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_path))


SOAP_HEADERS = {"content-type": "application/soap+xml; charset=utf-8"}


def soap_response(body: str) -> str:
    """Wrap a response body in a SOAP 1.2 envelope."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<env:Envelope xmlns:env="http://www.w3.org/2003/05/soap-envelope" '
        'xmlns:tds="http://www.onvif.org/ver10/device/wsdl" '
        'xmlns:trt="http://www.onvif.org/ver10/media/wsdl" '
        'xmlns:tptz="http://www.onvif.org/ver20/ptz/wsdl" '
        'xmlns:tt="http://www.onvif.org/ver10/schema">'
        f"<env:Body>{body}</env:Body></env:Envelope>"
    )


@pytest.fixture
def soap():
    """Envelope builder for canned device responses."""
    return soap_response


@pytest.fixture
def session_factory(tmp_path):
    """Sessionmaker bound to a fresh SQLite file with all tables created."""
    from sqlalchemy.orm import sessionmaker
    from database import build_engine, init_db

    engine = build_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def sample_credentials():
    """Camera login used across protocol tests."""
    from models.discovery import Credentials
    return Credentials(username="admin", password="s3cret")


@pytest.fixture
def device_information_xml():
    return soap_response(
        "<tds:GetDeviceInformationResponse>"
        "<tds:Manufacturer>Hikvision</tds:Manufacturer>"
        "<tds:Model>DS-2CD2143G2-I</tds:Model>"
        "<tds:FirmwareVersion>V5.7.3</tds:FirmwareVersion>"
        "<tds:SerialNumber>DS-2CD2143G2-I20230101</tds:SerialNumber>"
        "<tds:HardwareId>88</tds:HardwareId>"
        "</tds:GetDeviceInformationResponse>"
    )


@pytest.fixture
def capabilities_xml():
    return soap_response(
        "<tds:GetCapabilitiesResponse><tds:Capabilities>"
        "<tt:Device><tt:XAddr>http://192.168.1.64/onvif/device_service</tt:XAddr></tt:Device>"
        "<tt:Media><tt:XAddr>http://192.168.1.64/onvif/Media</tt:XAddr></tt:Media>"
        "<tt:PTZ><tt:XAddr>http://192.168.1.64/onvif/PTZ</tt:XAddr></tt:PTZ>"
        "</tds:Capabilities></tds:GetCapabilitiesResponse>"
    )


@pytest.fixture
def profiles_xml():
    return soap_response(
        "<trt:GetProfilesResponse>"
        '<trt:Profiles token="Profile_1" fixed="true"><tt:Name>mainStream</tt:Name></trt:Profiles>'
        '<trt:Profiles token="Profile_2" fixed="true"><tt:Name>subStream</tt:Name></trt:Profiles>'
        "</trt:GetProfilesResponse>"
    )


@pytest.fixture
def stream_uri_xml():
    return soap_response(
        "<trt:GetStreamUriResponse><trt:MediaUri>"
        "<tt:Uri>rtsp://192.168.1.64:554/Streaming/Channels/101?transportmode=unicast&amp;profile=Profile_1</tt:Uri>"
        "<tt:InvalidAfterConnect>false</tt:InvalidAfterConnect>"
        "</trt:MediaUri></trt:GetStreamUriResponse>"
    )
