from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Mapping

from ..util.errors import UnsupportedCloudError

AZURE_PUBLIC = "AzureCloud"
AZURE_CHINA = "AzureChinaCloud"
AZURE_US_GOVERNMENT = "AzureUSGovernment"
AZURE_GERMANY = "AzureGermanCloud"

DEFAULT_CLOUD = AZURE_PUBLIC


@dataclass(frozen=True)
class CloudConfig:
    name: str
    api_url: str
    portal_url: str


_CLOUDS: Mapping[str, CloudConfig] = MappingProxyType(
    {
        AZURE_PUBLIC: CloudConfig(AZURE_PUBLIC, "https://management.azure.com", "https://portal.azure.com"),
        AZURE_CHINA: CloudConfig(AZURE_CHINA, "https://management.chinacloudapi.cn", "https://portal.azure.cn"),
        AZURE_US_GOVERNMENT: CloudConfig(
            AZURE_US_GOVERNMENT, "https://management.usgovcloudapi.net", "https://portal.azure.us"
        ),
        AZURE_GERMANY: CloudConfig(
            AZURE_GERMANY, "https://management.microsoftazure.de", "https://portal.microsoftazure.de"
        ),
    }
)


def supported_clouds() -> List[str]:
    return list(_CLOUDS.keys())


def resolve_cloud(cloud: str) -> CloudConfig:
    """
    Return the endpoints for a cloud identifier.
    Unknown identifiers raise UnsupportedCloudError; there is no fallback cloud.
    """
    try:
        return _CLOUDS[cloud]
    except (KeyError, TypeError):
        raise UnsupportedCloudError(str(cloud)) from None


def get_api_url(cloud: str) -> str:
    return resolve_cloud(cloud).api_url


def get_portal_url(cloud: str) -> str:
    return resolve_cloud(cloud).portal_url
