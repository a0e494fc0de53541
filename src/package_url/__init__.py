"""Package URL - Parse, validate and canonicalize purls

This package provides the immutable package URL value type together with
its percent-encoding helpers and the common package type identifiers.
"""

from .package_url import (
    PackageURL,
    StandardType,
    MalformedPurlError,
    percent_encode,
    percent_decode,
)

__version__ = "1.0.0"

__all__ = [
    "PackageURL",
    "StandardType",
    "MalformedPurlError",
    "percent_encode",
    "percent_decode",
]
