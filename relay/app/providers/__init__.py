"""Upstream upload providers.

This package provides:
- Base provider interface (BaseProvider)
- Provider implementations (CatboxProvider, SxcuProvider, ImgchestProvider)
- Provider registry wired to the shared HTTP client and rate limit store
"""

from relay.app.providers.base import (
    BaseProvider,
    FormFile,
    build_form_data,
    build_multipart_parts,
)
from relay.app.providers.catbox import CatboxProvider
from relay.app.providers.factory import (
    ProviderRegistry,
    get_provider_registry,
    reset_provider_registry,
)
from relay.app.providers.imgchest import ImgchestProvider
from relay.app.providers.sxcu import SxcuProvider

__all__ = [
    # Base
    "BaseProvider",
    "FormFile",
    "build_form_data",
    "build_multipart_parts",
    # Providers
    "CatboxProvider",
    "ImgchestProvider",
    "SxcuProvider",
    # Registry
    "ProviderRegistry",
    "get_provider_registry",
    "reset_provider_registry",
]
