"""Package URL (purl) Identifier

This module parses, validates and canonicalizes package URLs of the form
`pkg:type/namespace/name@version?qualifiers#subpath`.
"""

import logging
import re
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote, urlsplit

logger: logging.Logger = logging.getLogger(__name__)

SCHEME = "pkg"

TYPE_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z0-9.+-]+")
QUALIFIER_KEY_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z0-9._-]+")

# Characters that may never appear unescaped anywhere in a URI
_URI_ILLEGAL_CHARS = re.compile(r'[\x00-\x20\x7f"<>\\^`{|}]')

_ESCAPE_RUN = re.compile(r"(?:%[0-9A-Fa-f]{2})+")


class MalformedPurlError(ValueError):
    """Invalid package URL string or component"""

    def __init__(self, message: str = "Invalid purl"):
        self.message = message
        super().__init__(message)


class StandardType(str, Enum):
    """Common package URL types"""
    BITBUCKET = "bitbucket"
    COMPOSER = "composer"
    DEBIAN = "deb"
    DOCKER = "docker"
    GEM = "gem"
    GENERIC = "generic"
    GITHUB = "github"
    GOLANG = "golang"
    MAVEN = "maven"
    NPM = "npm"
    NUGET = "nuget"
    PYPI = "pypi"
    RPM = "rpm"


_TYPE_ALIASES = {
    "debian": StandardType.DEBIAN,
}

_LOWERCASE_NAME_TYPES = frozenset({
    StandardType.BITBUCKET,
    StandardType.DEBIAN,
    StandardType.GITHUB,
    StandardType.GOLANG,
    StandardType.NPM,
})

_LOWERCASE_NAMESPACE_TYPES = _LOWERCASE_NAME_TYPES | {StandardType.RPM}


class PackageURL:
    """An immutable package URL

    Examples:
    - `pkg:npm/%40angular/core@12.0.0`
    - `pkg:maven/org.apache.commons/io@1.3.4?classifier=sources`
    - `pkg:golang/google.golang.org/genproto#googleapis/api/annotations`
    """

    __slots__ = ("_scheme", "_type", "_namespace", "_name", "_version", "_qualifiers", "_subpath")

    def __init__(
        self,
        type: Optional[str],
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        version: Optional[str] = None,
        qualifiers: Optional[Mapping[str, str]] = None,
        subpath: Optional[str] = None,
    ):
        """Create a package URL from its discrete components

        Components are expected unencoded; namespace, name, version and
        subpath are still percent-decoded if they happen to carry escapes.
        Qualifier values are taken as-is.
        """
        purl_type = self._validate_type(type)
        self._assign(
            purl_type,
            self._normalize_namespace(namespace, purl_type),
            self._normalize_name(name, purl_type),
            self._normalize_version(version),
            self._validate_qualifiers(qualifiers),
            self._normalize_subpath(subpath),
        )

    @classmethod
    def of(cls, type: str, name: str) -> 'PackageURL':
        """Create a package URL from only its required components"""
        return cls(type, name=name)

    @classmethod
    def from_string(cls, purl: Optional[str]) -> 'PackageURL':
        """Create a package URL by parsing its string representation

        Format: `pkg:type/namespace/name@version?qualifiers#subpath`
        Components are split off from the right in a fixed order: subpath at
        the last `#`, qualifiers at the last `?`, version at the last `@`.
        What remains is `type/namespace.../name`; namespace segments are
        joined with `,`.

        Malformed qualifier pairs (no `=` or an empty key) are dropped, but a
        retained key that does not match the key grammar is an error.
        """
        if purl is None or not purl.strip():
            raise MalformedPurlError("Invalid purl: Contains an empty or null value")

        cls._check_uri_syntax(purl)

        scheme, _, remainder = purl.partition(":")
        if scheme != SCHEME:
            raise MalformedPurlError("The PackageURL scheme is invalid")

        subpath = None
        qualifiers: Dict[str, str] = {}
        version = None

        if "#" in remainder:
            remainder, raw_subpath = remainder.rsplit("#", 1)
            subpath = cls._normalize_subpath(raw_subpath)

        if "?" in remainder:
            remainder, raw_qualifiers = remainder.rsplit("?", 1)
            qualifiers = cls._parse_qualifiers(raw_qualifiers)

        if "@" in remainder:
            remainder, raw_version = remainder.rsplit("@", 1)
            version = cls._normalize_version(raw_version)

        segments = remainder.strip("/").split("/")
        if len(segments) < 2:
            raise MalformedPurlError("Invalid purl: Does not contain a minimum of a 'type' and a 'name'")

        purl_type = cls._validate_type(segments[0])
        namespace = cls._normalize_namespace(",".join(segments[1:-1]), purl_type)
        name = cls._normalize_name(segments[-1], purl_type)

        result = cls.__new__(cls)
        result._assign(purl_type, namespace, name, version, qualifiers, subpath)
        return result

    def _assign(self, purl_type: str, namespace: Optional[str], name: str, version: Optional[str],
                qualifiers: Dict[str, str], subpath: Optional[str]) -> None:
        object.__setattr__(self, "_scheme", SCHEME)
        object.__setattr__(self, "_type", purl_type)
        object.__setattr__(self, "_namespace", namespace)
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_version", version)
        object.__setattr__(self, "_qualifiers", MappingProxyType(dict(sorted(qualifiers.items()))))
        object.__setattr__(self, "_subpath", subpath)

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"PackageURL is immutable, cannot set '{key}'")

    def __delattr__(self, key: str) -> None:
        raise AttributeError(f"PackageURL is immutable, cannot delete '{key}'")

    def __reduce__(self) -> tuple:
        # Rebuild from the stored fields; the subpath is not re-encoded by canonicalize()
        return (_restore, (self._type, self._namespace, self._name, self._version,
                           dict(self._qualifiers), self._subpath))

    @staticmethod
    def _check_uri_syntax(purl: str) -> None:
        """Reject strings that are not URIs or that carry user-info or a port"""
        illegal = _URI_ILLEGAL_CHARS.search(purl)
        if illegal:
            raise MalformedPurlError(
                f"Invalid purl: Illegal character {illegal.group()!r} at index {illegal.start()}")
        try:
            parts = urlsplit(purl)
            port = parts.port
        except ValueError as e:
            raise MalformedPurlError(f"Invalid purl: {e}") from e
        if parts.username is not None or port is not None:
            raise MalformedPurlError("Invalid purl: Contains parts not supported by the purl spec")

    @staticmethod
    def _standard_type(purl_type: str) -> Optional[StandardType]:
        try:
            return StandardType(purl_type)
        except ValueError:
            return _TYPE_ALIASES.get(purl_type)

    @staticmethod
    def _validate_type(purl_type: Optional[str]) -> str:
        if purl_type is None or not TYPE_PATTERN.fullmatch(purl_type):
            raise MalformedPurlError("The PackageURL type specified is invalid")
        return purl_type.lower()

    @classmethod
    def _normalize_namespace(cls, namespace: Optional[str], purl_type: str) -> Optional[str]:
        if not namespace:
            return None
        if cls._standard_type(purl_type) in _LOWERCASE_NAMESPACE_TYPES:
            namespace = namespace.lower()
        return percent_decode(namespace)

    @classmethod
    def _normalize_name(cls, name: Optional[str], purl_type: str) -> str:
        if not name:
            raise MalformedPurlError("The PackageURL name specified is invalid")
        standard_type = cls._standard_type(purl_type)
        if standard_type in _LOWERCASE_NAME_TYPES:
            name = name.lower()
        elif standard_type is StandardType.PYPI:
            name = name.replace("_", "-").lower()
        return percent_decode(name)

    @staticmethod
    def _normalize_version(version: Optional[str]) -> Optional[str]:
        if not version:
            return None
        return percent_decode(version)

    @staticmethod
    def _normalize_subpath(subpath: Optional[str]) -> Optional[str]:
        """Strip one leading and one trailing '/' and decode"""
        if subpath is None:
            return None
        if subpath.startswith("/"):
            subpath = subpath[1:]
        if subpath.endswith("/"):
            subpath = subpath[:-1]
        if not subpath:
            return None
        return percent_decode(subpath)

    @staticmethod
    def _validate_qualifier_key(key: Optional[str]) -> str:
        if key is None or not QUALIFIER_KEY_PATTERN.fullmatch(key):
            raise MalformedPurlError(
                f"The PackageURL specified contains a qualifier key name which is invalid: {key!r}")
        return key.lower()

    @classmethod
    def _parse_qualifiers(cls, encoded: str) -> Dict[str, str]:
        """Parse `k1=v1&k2=v2` into a dict with lowercased keys

        A repeated key (compared case-insensitively) keeps its last value.
        """
        qualifiers: Dict[str, str] = {}
        for pair in encoded.split("&"):
            key, sep, value = pair.partition("=")
            if not sep or not key:
                logger.debug("Dropping malformed qualifier pair %r", pair)
                continue
            qualifiers[cls._validate_qualifier_key(key)] = percent_decode(value)
        return qualifiers

    @classmethod
    def _validate_qualifiers(cls, qualifiers: Optional[Mapping[str, str]]) -> Dict[str, str]:
        if qualifiers is None:
            return {}
        validated: Dict[str, str] = {}
        for key, value in qualifiers.items():
            lowered = cls._validate_qualifier_key(key)
            if value is None:
                raise MalformedPurlError(
                    f"The PackageURL specified contains a qualifier key with a null value: {key!r}")
            if lowered in validated:
                raise MalformedPurlError(f"The PackageURL specified contains a duplicate qualifier key: {key!r}")
            validated[lowered] = value
        return validated

    @property
    def scheme(self) -> str:
        return self._scheme

    @property
    def type(self) -> str:
        """The package type or protocol such as maven, npm, pypi"""
        return self._type

    @property
    def namespace(self) -> Optional[str]:
        """The name prefix such as a Maven groupid or a GitHub organization"""
        return self._namespace

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> Optional[str]:
        return self._version

    @property
    def qualifiers(self) -> Mapping[str, str]:
        """Read-only qualifiers sorted by key; empty when there are none"""
        return self._qualifiers

    @property
    def subpath(self) -> Optional[str]:
        """Path within the package, relative to the package root"""
        return self._subpath

    def get_qualifier(self, key: str) -> Optional[str]:
        """Get a qualifier value, key lookup is case-insensitive"""
        return self._qualifiers.get(key.lower())

    def canonicalize(self) -> str:
        """Get the canonical string representation of this package URL

        Namespace, name, version and qualifier values are percent-encoded.
        Qualifiers are emitted in key order with lowercase keys.
        The subpath is emitted as stored, without encoding.
        """
        parts = [self._scheme, ":", self._type, "/"]
        if self._namespace is not None:
            parts.append(percent_encode(self._namespace))
            parts.append("/")
        parts.append(percent_encode(self._name))
        if self._version is not None:
            parts.append("@")
            parts.append(percent_encode(self._version))
        if self._qualifiers:
            parts.append("?")
            parts.append("&".join(f"{k.lower()}={percent_encode(v)}" for k, v in self._qualifiers.items()))
        if self._subpath is not None:
            parts.append("#")
            parts.append(self._subpath)
        return "".join(parts)

    def to_string(self) -> str:
        return self.canonicalize()

    def to_dict(self) -> Dict[str, Any]:
        """Get the components as a plain dict"""
        return {
            "scheme": self._scheme,
            "type": self._type,
            "namespace": self._namespace,
            "name": self._name,
            "version": self._version,
            "qualifiers": dict(self._qualifiers),
            "subpath": self._subpath,
        }

    @staticmethod
    def canonical(purl: str) -> str:
        """Get the canonical form of a package URL string"""
        return PackageURL.from_string(purl).canonicalize()

    @staticmethod
    def canonical_option(purl: Optional[str]) -> Optional[str]:
        """Get the canonical form of an optional package URL string"""
        if purl is not None:
            return PackageURL.from_string(purl).canonicalize()
        else:
            return None

    def __str__(self) -> str:
        return self.canonicalize()

    def __repr__(self) -> str:
        return f"PackageURL('{self.canonicalize()}')"

    def _key(self) -> tuple:
        return (self._scheme, self._type, self._namespace, self._name, self._version,
                tuple(self._qualifiers.items()), self._subpath)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageURL):
            return False
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())


def percent_encode(value: str) -> str:
    """Percent-encode per RFC 3986

    Space becomes `%20` rather than `+`; `~` and `*` stay literal.
    """
    return quote(value, safe="*")


def percent_decode(value: str) -> str:
    """Decode `%XX` escapes as UTF-8

    Escapes that do not form valid UTF-8 are left in place as written, so a
    string with nothing decodable comes back unchanged. A `+` is not treated
    as a space.
    """
    decoded = _ESCAPE_RUN.sub(lambda m: _decode_escape_run(m.group()), value)
    if decoded != value:
        return decoded
    return value


def _decode_escape_run(run: str) -> str:
    data = bytes.fromhex(run.replace("%", ""))
    chars = []
    pos = 0
    while pos < len(data):
        for size in (4, 3, 2, 1):
            try:
                chars.append(data[pos:pos + size].decode("utf-8"))
            except UnicodeDecodeError:
                continue
            pos += size
            break
        else:
            chars.append(run[pos * 3:pos * 3 + 3])
            pos += 1
    return "".join(chars)


def _restore(purl_type: str, namespace: Optional[str], name: str, version: Optional[str],
             qualifiers: Dict[str, str], subpath: Optional[str]) -> PackageURL:
    """Unpickle a PackageURL from already validated fields"""
    result = PackageURL.__new__(PackageURL)
    result._assign(purl_type, namespace, name, version, qualifiers, subpath)
    return result
