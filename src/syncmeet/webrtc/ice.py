"""ICE server configuration shared by the REST surface and the meeting client."""

from typing import Optional

from syncmeet.config import Settings, settings as default_settings
from syncmeet.webrtc.schemas import IceServerConfig, WebRtcConfig

FALLBACK_STUN_URLS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


def build_webrtc_config(settings: Optional[Settings] = None) -> WebRtcConfig:
    """Build the STUN/TURN list and policies from settings."""
    settings = settings or default_settings
    ice_servers = []

    if settings.stun_urls_list:
        ice_servers.append(IceServerConfig(urls=settings.stun_urls_list))

    if settings.turn_urls_list:
        credential = settings.WEBRTC_TURN_CREDENTIAL
        ice_servers.append(
            IceServerConfig(
                urls=settings.turn_urls_list,
                username=settings.WEBRTC_TURN_USERNAME,
                credential=credential.get_secret_value() if credential else None,
            )
        )

    # Fallback to public STUN servers if nothing configured
    if not ice_servers:
        ice_servers.append(IceServerConfig(urls=FALLBACK_STUN_URLS))

    return WebRtcConfig(
        ice_servers=ice_servers,
        ice_transport_policy=settings.WEBRTC_ICE_TRANSPORT_POLICY,
        bundle_policy=settings.WEBRTC_BUNDLE_POLICY,
        rtcp_mux_policy=settings.WEBRTC_RTCP_MUX_POLICY,
    )
