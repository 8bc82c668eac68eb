#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# pfx_rebind.py - Install a PFX certificate and repoint every matching HTTPS site binding to it.
#
# Features:
#  - PKCS#12 (.pfx/.p12) and PEM certificate loading with passphrase support
#  - Identity extraction from subject CN + subjectAltName (DER-decoded, DNS entries only)
#  - Single-level wildcard matching (*.example.com covers example.com and any subdomain)
#  - Idempotent installation into a fingerprint-keyed credential store with a readable label
#  - Per-site atomic rebinding: a site's bindings are committed together or not at all
#  - Site backends: local YAML site file or web-server management REST API
#  - Opt-in updating of host-agnostic (empty host) HTTPS bindings via --update-empty-host
#  - YAML config (-C/--config) merging with CLI arguments
#  - Dry-run mode for testing without changes
#  - Enhanced logging with --log FILE and --log-level {standard,debug}
#  - Operation correlation IDs and sensitive data scrubbing in logs
#
# Version: 1.0.0
#
# MIT License
# Copyright (c) 2025 CyB0rgg <dev@bluco.re>

import argparse
import datetime
import json
import os
import re
import stat
import sys
import tempfile
import urllib.parse
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, List, Iterable, Union

# Dependency checking with better error messages
missing_msgs = []

try:
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.serialization import pkcs12
    from cryptography.x509.oid import NameOID
except ImportError as e:
    missing_msgs.append(("[cryptography]", "pip3 install cryptography", "sudo apt-get install python3-cryptography", str(e)))

try:
    import yaml as yml
except ImportError as e:
    missing_msgs.append(("[pyyaml]", "pip3 install pyyaml", "sudo apt-get install python3-yaml", str(e)))

try:
    import requests
    from urllib3.util.retry import Retry
    from urllib3.exceptions import InsecureRequestWarning
    import urllib3
except ImportError as e:
    missing_msgs.append(("[requests]", "pip3 install requests", "sudo apt-get install python3-requests", str(e)))

if missing_msgs:
    for pkg, pip_hint, apt_hint, error in missing_msgs:
        print(f"[!] Missing required Python module: {pkg}")
        print(f"    pip:   {pip_hint}")
        print(f"    apt:   {apt_hint}")
        print(f"    error: {error}")
    sys.exit(1)

API_PREFIX = "/api"
VERSION = "1.0.0"

SAN_OID = "2.5.29.17"
SECURE_PROTOCOL = "https"
WILDCARD_MARKER = "*."
DEFAULT_STORE_NAME = "My"
DEFAULT_STORE_DIR = "~/.pfx_rebind/store"
DEFAULT_API_PORT = 55539

# ---------------------------
# Configuration & Validation
# ---------------------------

class LogLevel(Enum):
    """Supported log levels."""
    STANDARD = "standard"
    DEBUG = "debug"

@dataclass
class Config:
    """Configuration container with validation."""
    pfx: Optional[str] = None
    password: Optional[str] = None
    update_empty_host: bool = False
    sites_file: Optional[str] = None
    api_host: Optional[str] = None
    api_port: int = DEFAULT_API_PORT
    api_token: Optional[str] = None
    api_prefix: str = API_PREFIX
    store_dir: str = DEFAULT_STORE_DIR
    store_name: str = DEFAULT_STORE_NAME
    dry_run: bool = False
    insecure: bool = False
    continue_on_install_error: bool = False
    timeout_connect: int = 5
    timeout_read: int = 30
    log: Optional[str] = None
    log_level: str = "standard"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """Validate configuration values."""
        if not self.pfx:
            raise ValueError("PFX path is required")

        if self.sites_file and self.api_host:
            raise ValueError("Use either sites_file or api_host, not both")

        if not self.sites_file and not self.api_host:
            raise ValueError("A site backend is required: sites_file or api_host")

        if self.api_host and not self.api_token:
            raise ValueError("api_token is required when api_host is set")

        if not isinstance(self.api_port, int) or not (1 <= self.api_port <= 65535):
            raise ValueError(f"Port must be an integer between 1-65535, got: {self.api_port}")

        if self.timeout_connect <= 0:
            raise ValueError(f"timeout_connect must be positive, got: {self.timeout_connect}")

        if self.timeout_read <= 0:
            raise ValueError(f"timeout_read must be positive, got: {self.timeout_read}")

        if self.log_level not in [level.value for level in LogLevel]:
            raise ValueError(f"log_level must be one of {[level.value for level in LogLevel]}, got: {self.log_level}")

        if not self.store_name:
            raise ValueError("store_name must not be empty")

        # Expand paths
        self.pfx = str(Path(self.pfx).expanduser().resolve())
        self.store_dir = str(Path(self.store_dir).expanduser().resolve())
        if self.sites_file:
            self.sites_file = str(Path(self.sites_file).expanduser().resolve())
        if self.log:
            self.log = str(Path(self.log).expanduser().resolve())

    @property
    def backend(self) -> str:
        """Return site backend type."""
        return "REST" if self.api_host else "YAML"

# ---------------------------
# Custom Exceptions
# ---------------------------

class PfxRebindError(Exception):
    """Base exception for PfxRebind errors."""
    pass

class ConfigurationError(PfxRebindError):
    """Configuration validation error."""
    pass

class CredentialLoadError(PfxRebindError):
    """Certificate file could not be read, decrypted or parsed."""
    pass

class StoreInstallError(PfxRebindError):
    """Credential store rejected the certificate."""
    pass

class APIError(PfxRebindError):
    """Management API error."""
    pass

class GroupCommitError(PfxRebindError):
    """A site's pending binding changes could not be persisted."""

    def __init__(self, site: str, message: str):
        super().__init__(f"{site}: {message}")
        self.site = site
        self.message = message

@dataclass
class ExtractionWarning:
    """A subjectAltName entry that was skipped during identity extraction."""
    oid: str
    entry: Any
    reason: str

    def __str__(self) -> str:
        return f"{self.oid or '<unknown>'}: skipped {self.entry!r} ({self.reason})"

# ---------------------------
# Logging
# ---------------------------

class Logger:
    """Plain-file logger with operation tracking and secret scrubbing."""

    def __init__(self, path: Optional[str], level: LogLevel):
        self.path = path
        self.level = level
        self.fp = None
        self.operation_id: Optional[str] = None

        if self.path:
            self._open_log_file()

    def _open_log_file(self):
        """Open log file with proper error handling."""
        try:
            log_path = Path(self.path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self.fp = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            print(f"[!] Could not open log file '{self.path}': {e}")
            self.fp = None

    def set_operation_id(self, operation_id: str):
        """Set operation ID for correlation."""
        self.operation_id = operation_id

    def _ts(self) -> str:
        """Generate timestamp."""
        return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _scrub(self, s: Union[str, Dict, Any]) -> str:
        """Scrub sensitive information from log messages."""
        if not isinstance(s, str):
            try:
                s = json.dumps(s, default=str)
            except (TypeError, ValueError):
                s = str(s)

        patterns = [
            # API tokens
            (r"(Bearer\s+)[A-Za-z0-9._\-]+=*", r"\1<REDACTED>"),
            (r"([\"']?(?:api_)?token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", r"\1<REDACTED>"),
            # PFX passphrases
            (r"([\"']?password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", r"\1<REDACTED>"),
            # Private keys (PKCS#8, RSA, EC and encrypted)
            (r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", "<PRIVATE-KEY-REDACTED>"),
            # Certificates (keep structure but redact content)
            (r"-----BEGIN CERTIFICATE-----[^-]*-----END CERTIFICATE-----", "<CERTIFICATE-REDACTED>"),
        ]

        for pattern, replacement in patterns:
            s = re.sub(pattern, replacement, s, flags=re.IGNORECASE | re.DOTALL)

        return s

    def _prefix(self) -> str:
        return f"[{self.operation_id[:8]}] " if self.operation_id else ""

    def _format_message(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Format log message with operation correlation."""
        if self.level == LogLevel.DEBUG and context:
            formatted_msg = f"{self._prefix()}{msg} | context={json.dumps(context, default=str)}"
        else:
            formatted_msg = f"{self._prefix()}{msg}"

        return f"{self._ts()} {level.upper()} {self._scrub(formatted_msg)}"

    def _write(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None):
        """Write log entry."""
        if not self.fp:
            return

        try:
            self.fp.write(self._format_message(level, msg, context) + "\n")
            self.fp.flush()
        except OSError:
            # Fail silently for logging errors
            pass

    def info(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log info message."""
        self._write("info", msg, context)
        if also_stdout:
            print(f"{self._prefix()}{msg}")

    def warn(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log warning message."""
        self._write("warn", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{msg}")

    def error(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log error message."""
        self._write("error", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{msg}", file=sys.stderr)

    def debug(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        """Log debug message."""
        if self.level == LogLevel.DEBUG:
            self._write("debug", msg, context)
            if also_stdout:
                print(f"[DEBUG] {self._prefix()}{msg}")

    def close(self):
        """Close log file."""
        if self.fp:
            self.fp.close()
            self.fp = None

# ---------------------------
# Certificate Model & Loading
# ---------------------------

@dataclass(frozen=True)
class ExtensionRecord:
    """One X.509 extension: its OID and, for subjectAltName, its (kind, value) entries."""
    oid: str
    entries: Tuple[Any, ...] = ()
    error: Optional[str] = None

@dataclass(frozen=True)
class Certificate:
    """Loaded certificate. Immutable for the whole run."""
    fingerprint: str
    subject_name: str
    not_after: datetime.datetime
    extensions: Tuple[ExtensionRecord, ...] = ()
    cert_pem: bytes = b""
    key_pem: Optional[bytes] = None
    chain_pem: bytes = b""

_GENERAL_NAME_KINDS = (
    (x509.DNSName, "DNS"),
    (x509.IPAddress, "IP"),
    (x509.RFC822Name, "EMAIL"),
    (x509.UniformResourceIdentifier, "URI"),
    (x509.DirectoryName, "DIRNAME"),
    (x509.RegisteredID, "RID"),
    (x509.OtherName, "OTHER"),
)

_PRIVATE_KEY_RE = re.compile(
    rb"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL
)

class CertificateLoader:
    """Read PKCS#12 or PEM credentials into a Certificate."""

    @staticmethod
    def read_bytes(path: str) -> bytes:
        """Load file content with validation."""
        file_path = Path(path)

        if not file_path.exists():
            raise CredentialLoadError(f"File not found: {path}")

        if not file_path.is_file():
            raise CredentialLoadError(f"Path is not a file: {path}")

        try:
            with open(file_path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise CredentialLoadError(f"Failed to read file {path}: {e}") from e

        if not content.strip():
            raise CredentialLoadError(f"File is empty: {path}")

        return content

    @staticmethod
    def load(path: str, password: Optional[str]) -> Certificate:
        """Load a certificate from a .pfx/.p12 bundle or a PEM file."""
        data = CertificateLoader.read_bytes(path)
        if b"-----BEGIN CERTIFICATE-----" in data:
            return CertificateLoader.load_pem(data, password)
        return CertificateLoader.load_pkcs12(data, password)

    @staticmethod
    def load_pkcs12(data: bytes, password: Optional[str]) -> Certificate:
        passphrase = password.encode("utf-8") if password is not None else None
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, passphrase)
        except (ValueError, TypeError) as e:
            raise CredentialLoadError(f"Could not decrypt PKCS#12 bundle (wrong password or malformed file): {e}") from e

        if cert is None:
            raise CredentialLoadError("PKCS#12 bundle does not contain a certificate")

        return CertificateLoader.from_x509(cert, key, additional or [])

    @staticmethod
    def load_pem(data: bytes, password: Optional[str]) -> Certificate:
        chunks = CertificateLoader._split_pem_chain(data.decode("utf-8", errors="ignore"))
        try:
            certs = [x509.load_pem_x509_certificate(chunk.encode("utf-8")) for chunk in chunks]
        except ValueError as e:
            raise CredentialLoadError(f"Invalid certificate format: {e}") from e

        if not certs:
            raise CredentialLoadError("No valid certificates found in PEM data")

        key = None
        match = _PRIVATE_KEY_RE.search(data)
        if match:
            passphrase = password.encode("utf-8") if password else None
            try:
                key = serialization.load_pem_private_key(match.group(0), passphrase)
            except (ValueError, TypeError) as e:
                raise CredentialLoadError(f"Could not load private key (wrong password or malformed key): {e}") from e

        return CertificateLoader.from_x509(certs[0], key, certs[1:])

    @staticmethod
    def _split_pem_chain(pem: str) -> List[str]:
        """Split PEM chain into individual certificates."""
        parts = []
        current = []

        for line in pem.splitlines():
            if "BEGIN CERTIFICATE" in line:
                current = [line]
            elif "END CERTIFICATE" in line:
                current.append(line)
                parts.append("\n".join(current) + "\n")
                current = []
            elif current:
                current.append(line)

        return parts

    @staticmethod
    def from_x509(cert: "x509.Certificate", key: Any = None, chain: Iterable["x509.Certificate"] = ()) -> Certificate:
        """Build the immutable Certificate model from cryptography objects."""
        key_pem = None
        if key is not None:
            key_pem = key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )

        return Certificate(
            fingerprint=cert.fingerprint(hashes.SHA1()).hex().upper(),
            subject_name=CertificateLoader._common_name(cert),
            not_after=cert.not_valid_after_utc,
            extensions=CertificateLoader._extension_records(cert),
            cert_pem=cert.public_bytes(serialization.Encoding.PEM),
            key_pem=key_pem,
            chain_pem=b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain),
        )

    @staticmethod
    def _common_name(cert: "x509.Certificate") -> str:
        attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attrs:
            return ""
        value = attrs[0].value
        return value.strip() if isinstance(value, str) else ""

    @staticmethod
    def _extension_records(cert: "x509.Certificate") -> Tuple[ExtensionRecord, ...]:
        try:
            extensions = list(cert.extensions)
        except (ValueError, x509.DuplicateExtension) as e:
            # The whole extension block is unreadable; keep the certificate usable by its CN.
            return (ExtensionRecord(oid="", error=f"extensions could not be decoded: {e}"),)

        records = []
        for ext in extensions:
            if isinstance(ext.value, x509.SubjectAlternativeName):
                entries = tuple(CertificateLoader._general_name_entry(name) for name in ext.value)
                records.append(ExtensionRecord(oid=ext.oid.dotted_string, entries=entries))
            else:
                records.append(ExtensionRecord(oid=ext.oid.dotted_string))
        return tuple(records)

    @staticmethod
    def _general_name_entry(name: Any) -> Tuple[str, str]:
        for cls, kind in _GENERAL_NAME_KINDS:
            if isinstance(name, cls):
                return kind, str(name.value)
        return "UNKNOWN", str(name)

    @staticmethod
    def summarize(certificate: Certificate) -> str:
        """Generate certificate summary."""
        now = datetime.datetime.now(datetime.timezone.utc)
        days_left = (certificate.not_after - now).days

        if days_left < 0:
            expiry_info = f"EXPIRED {abs(days_left)} days ago"
        elif days_left == 0:
            expiry_info = "EXPIRES TODAY"
        elif days_left == 1:
            expiry_info = "expires tomorrow"
        elif days_left <= 30:
            expiry_info = f"expires in {days_left} days"
        else:
            expiry_info = f"expires {certificate.not_after.strftime('%Y-%m-%d')} ({days_left} days)"

        lines = [
            "[*] Certificate summary:",
            f"    subject: {certificate.subject_name or '(no CN)'}",
            f"    fingerprint: {certificate.fingerprint}",
            f"    validity: {expiry_info}",
            f"    private key: {'present' if certificate.key_pem else 'absent'}",
        ]
        return "\n".join(lines)

# ---------------------------
# Identity Extraction & Matching
# ---------------------------

class IdentitySet:
    """Ordered domain list, deduplicated case-insensitively by first occurrence."""

    def __init__(self, domains: Iterable[str] = ()):
        self._domains: List[str] = []
        self._keys = set()
        self.warnings: List[ExtractionWarning] = []
        for domain in domains:
            self.add(domain)

    def add(self, domain: str) -> bool:
        """Append domain unless empty or already present. Returns True when added."""
        domain = (domain or "").strip()
        key = domain.lower()
        if not domain or key in self._keys:
            return False
        self._keys.add(key)
        self._domains.append(domain)
        return True

    def first(self) -> Optional[str]:
        return self._domains[0] if self._domains else None

    def to_list(self) -> List[str]:
        return list(self._domains)

    def __iter__(self):
        return iter(self._domains)

    def __len__(self) -> int:
        return len(self._domains)

    def __contains__(self, domain: object) -> bool:
        return isinstance(domain, str) and domain.strip().lower() in self._keys

    def __repr__(self) -> str:
        return f"IdentitySet({self._domains!r})"

def extract_identities(certificate: Certificate) -> IdentitySet:
    """
    Derive the DNS identities a certificate covers.

    subjectAltName DNS entries come first in extension order, then the subject
    CN if it is not already listed. Malformed entries are skipped and recorded
    on the result's ``warnings``; other entry kinds (IP, email, URI...) are ignored.
    """
    identities = IdentitySet()

    for record in certificate.extensions:
        if record.error:
            identities.warnings.append(ExtractionWarning(record.oid, None, record.error))
            continue
        if record.oid != SAN_OID:
            continue

        for entry in record.entries:
            if not (isinstance(entry, tuple) and len(entry) == 2
                    and isinstance(entry[0], str) and isinstance(entry[1], str)):
                identities.warnings.append(ExtractionWarning(record.oid, entry, "unrecognised entry"))
                continue

            kind, value = entry
            if kind.upper() != "DNS":
                continue
            if not value.strip():
                identities.warnings.append(ExtractionWarning(record.oid, entry, "empty DNS name"))
                continue
            identities.add(value)

    identities.add(certificate.subject_name)
    return identities

def matches(host: str, identities: Iterable[str]) -> bool:
    """Return True if host is covered by any identity (exact or single *. wildcard)."""
    candidate = (host or "").strip().lower()
    if not candidate:
        return False

    for identity in identities:
        pattern = identity.lower()
        if pattern.startswith(WILDCARD_MARKER):
            root = pattern[len(WILDCARD_MARKER):]
            # "*." alone has no root to anchor on
            if root and (candidate == root or candidate.endswith("." + root)):
                return True
        elif candidate == pattern:
            return True

    return False

# ---------------------------
# Credential Store & Installation
# ---------------------------

def _atomic_write(path: Path, data: bytes, mode: Optional[int] = None):
    """Write data next to path and rename it into place."""
    if mode is None and path.exists():
        mode = stat.S_IMODE(os.stat(path).st_mode)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

class CredentialStore:
    """Fingerprint-keyed certificate store. Append-only for this tool."""

    name = DEFAULT_STORE_NAME

    def open(self) -> "CredentialStore":
        return self

    def close(self):
        pass

    def find(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def add(self, certificate: Certificate, label: str):
        raise NotImplementedError

    def __enter__(self) -> "CredentialStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

class DirectoryCredentialStore(CredentialStore):
    """Certificates as <FP>.crt / <FP>.key files plus an index.yaml of labels."""

    INDEX_FILE = "index.yaml"

    def __init__(self, path: str, name: str = DEFAULT_STORE_NAME):
        self.path = Path(path)
        self.name = name
        self._index: Optional[Dict[str, Dict[str, Any]]] = None

    @property
    def index_path(self) -> Path:
        return self.path / self.INDEX_FILE

    def open(self) -> "DirectoryCredentialStore":
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            data = {}
            if self.index_path.exists():
                with open(self.index_path, "r", encoding="utf-8") as f:
                    data = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise StoreInstallError(f"Could not open credential store {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("certificates") or {}, dict):
            raise StoreInstallError(f"Credential store index is malformed: {self.index_path}")

        self._index = {str(fp).upper(): entry for fp, entry in (data.get("certificates") or {}).items()}
        return self

    def close(self):
        self._index = None

    def _require_open(self) -> Dict[str, Dict[str, Any]]:
        if self._index is None:
            raise StoreInstallError(f"Credential store {self.path} is not open")
        return self._index

    def find(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        return self._require_open().get(fingerprint.upper())

    def list(self) -> List[Dict[str, Any]]:
        return [{"fingerprint": fp, **entry} for fp, entry in self._require_open().items()]

    def add(self, certificate: Certificate, label: str):
        index = dict(self._require_open())
        fingerprint = certificate.fingerprint.upper()
        cert_file = f"{fingerprint}.crt"
        key_file = f"{fingerprint}.key" if certificate.key_pem else None

        entry = {
            "label": label,
            "subject": certificate.subject_name,
            "not_after": certificate.not_after.isoformat(),
            "installed_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "store": self.name,
            "certificate": cert_file,
            "key": key_file,
        }

        try:
            _atomic_write(self.path / cert_file, certificate.cert_pem + certificate.chain_pem, 0o644)
            if key_file:
                _atomic_write(self.path / key_file, certificate.key_pem, 0o600)
            index[fingerprint] = entry
            document = yml.safe_dump({"certificates": index}, sort_keys=False)
            _atomic_write(self.index_path, document.encode("utf-8"), 0o644)
        except (OSError, yml.YAMLError) as e:
            raise StoreInstallError(f"Could not add certificate {fingerprint} to store {self.path}: {e}") from e

        self._index = index

@dataclass
class InstallResult:
    fingerprint: str
    label: str
    already_present: bool

def credential_label(certificate: Certificate, identities: Iterable[str]) -> str:
    """Human-readable label, e.g. ``*.example.com[*3] (~2026-01-01)``."""
    domains = list(identities)
    if not domains:
        summary = certificate.subject_name
    else:
        summary = domains[0] + (f"[*{len(domains)}]" if len(domains) > 1 else "")
    return f"{summary} (~{certificate.not_after:%Y-%m-%d})"

def install(certificate: Certificate, identities: Iterable[str], store: CredentialStore) -> InstallResult:
    """Add certificate to store unless its fingerprint is already there."""
    label = credential_label(certificate, identities)

    if store.find(certificate.fingerprint) is not None:
        return InstallResult(certificate.fingerprint, label, already_present=True)

    store.add(certificate, label)
    return InstallResult(certificate.fingerprint, label, already_present=False)

# ---------------------------
# Sites & Bindings
# ---------------------------

def _optional_str(value: Any) -> Optional[str]:
    """Backend values such as an unquoted numeric thumbprint become strings."""
    return None if value is None else str(value)

@dataclass
class Binding:
    """One listener of a site. Only certificate_hash/certificate_store are ever written."""
    protocol: str
    host: str = ""
    port: Optional[int] = None
    ip: str = "*"
    certificate_hash: Optional[str] = None
    certificate_store: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_secure(self) -> bool:
        return (self.protocol or "").strip().lower() == SECURE_PROTOCOL

    @property
    def display_host(self) -> str:
        return self.host or "*"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Binding":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Binding must be a mapping, got: {data!r}")
        known = {"protocol", "host", "port", "ip", "certificate_hash", "certificate_store"}
        return cls(
            protocol=str(data.get("protocol") or ""),
            host=str(data.get("host") or ""),
            port=data.get("port"),
            ip=str(data.get("ip") or "*"),
            certificate_hash=_optional_str(data.get("certificate_hash")),
            certificate_store=_optional_str(data.get("certificate_store")),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "protocol": self.protocol,
            "host": self.host,
            "port": self.port,
            "ip": self.ip,
            "certificate_hash": self.certificate_hash,
            "certificate_store": self.certificate_store,
        })
        return data

@dataclass
class Site:
    name: str
    bindings: List[Binding] = field(default_factory=list)
    id: Optional[str] = None

class SiteConfigService:
    """Source of sites and the per-site commit operation."""

    def sites(self) -> List[Site]:
        raise NotImplementedError

    def commit(self, site: Site):
        """Persist all pending binding changes of site, or raise GroupCommitError."""
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self) -> "SiteConfigService":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

class YamlSiteConfig(SiteConfigService):
    """Sites kept in a YAML file: ``sites: [{name, bindings: [...]}]``."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read site configuration {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("sites"), list):
            raise ConfigurationError(f"Site configuration must contain a 'sites' list: {self.path}")
        return data

    def sites(self) -> List[Site]:
        result = []
        seen = set()
        for idx, entry in enumerate(self._read()["sites"]):
            if not isinstance(entry, dict) or not entry.get("name"):
                raise ConfigurationError(f"Site #{idx} in {self.path} has no name")
            # commit() locates a site by name
            if str(entry["name"]) in seen:
                raise ConfigurationError(f"Duplicate site name '{entry['name']}' in {self.path}")
            seen.add(str(entry["name"]))
            bindings = [Binding.from_dict(b) for b in entry.get("bindings") or []]
            result.append(Site(name=str(entry["name"]), bindings=bindings, id=entry.get("id")))
        return result

    def commit(self, site: Site):
        # Re-read so only this site's bindings are replaced on disk
        try:
            data = self._read()
        except ConfigurationError as e:
            raise GroupCommitError(site.name, str(e)) from e

        for entry in data["sites"]:
            if isinstance(entry, dict) and str(entry.get("name")) == site.name:
                entry["bindings"] = [b.to_dict() for b in site.bindings]
                break
        else:
            raise GroupCommitError(site.name, f"site no longer present in {self.path}")

        try:
            document = yml.safe_dump(data, sort_keys=False)
            _atomic_write(self.path, document.encode("utf-8"))
        except (OSError, yml.YAMLError) as e:
            raise GroupCommitError(site.name, f"failed to write {self.path}: {e}") from e

# ---------------------------
# Management API Client
# ---------------------------

class ManagementAPI:
    """Web-server management REST API client."""

    def __init__(self, config: Config, logger: Logger):
        self.config = config
        self.logger = logger
        self.base_url = f"https://{config.api_host}:{config.api_port}{config.api_prefix}"
        self.session = self._build_session()

    def _build_session(self) -> requests.Session:
        """Build requests session with retry policy."""
        session = requests.Session()
        session.headers.update({
            "Authorization": f"Bearer {self.config.api_token}",
            "Accept": "application/json",
        })

        # PATCH is the per-site commit and is never retried
        retry = Retry(
            total=2,
            connect=2,
            read=2,
            backoff_factor=0.3,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(["GET", "HEAD", "OPTIONS"]),
            raise_on_status=False,
        )

        adapter = requests.adapters.HTTPAdapter(max_retries=retry, pool_maxsize=10)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        if self.config.insecure:
            urllib3.disable_warnings(InsecureRequestWarning)

        return session

    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             json_body: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        """Make API request with logging."""
        url = f"{self.base_url}{path}"

        self.logger.debug(
            f"HTTP {method} {path}",
            context={"params": params or {}, "json": json_body or {}, "verify": not self.config.insecure}
        )

        try:
            response = self.session.request(
                method, url,
                params=params or {},
                json=json_body,
                verify=not self.config.insecure,
                timeout=(self.config.timeout_connect, self.config.timeout_read)
            )
        except requests.exceptions.SSLError as e:
            error_msg = "certificate verify failed" if "CERTIFICATE_VERIFY_FAILED" in str(e) else "TLS/SSL error"
            raise APIError(f"TLS verification failed: {error_msg}. Consider using --insecure if expected.") from e
        except requests.exceptions.Timeout as e:
            raise APIError(f"Request timeout: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise APIError(f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise APIError(f"Request failed: {e}") from e

        code = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if code >= 400:
            self.logger.debug(f"HTTP {method} {path} -> {code}", context=data)
        else:
            self.logger.debug(f"HTTP {method} {path} -> {code}")

        return code, data

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        return self._req("GET", path, params=params)

    def patch(self, path: str, json_body: Dict[str, Any], params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        return self._req("PATCH", path, params=params, json_body=json_body)

    def close(self):
        self.session.close()

class RestSiteConfig(SiteConfigService):
    """Sites served by the management API; one PATCH per site is the commit."""

    SITES_PATH = "/webserver/websites"

    def __init__(self, api: ManagementAPI, logger: Logger):
        self.api = api
        self.logger = logger

    @staticmethod
    def _results(data: Any, key: str) -> List[Any]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return data.get(key) or data.get("results") or []
        return []

    def _site_path(self, site_id: str) -> str:
        return f"{self.SITES_PATH}/{urllib.parse.quote(str(site_id), safe='')}"

    def sites(self) -> List[Site]:
        code, data = self.api.get(self.SITES_PATH)
        if code != 200:
            raise APIError(f"Failed to list websites: HTTP {code}")

        result = []
        for item in self._results(data, "websites"):
            if not isinstance(item, dict) or not item.get("id"):
                self.logger.warn(f"Skipping website entry without an id: {item!r}", also_stdout=True)
                continue
            site_id = str(item["id"])
            code, detail = self.api.get(self._site_path(site_id))
            if code != 200 or not isinstance(detail, dict):
                raise APIError(f"Failed to read website {item.get('name') or site_id}: HTTP {code}")

            bindings = [self._binding_from_api(b) for b in detail.get("bindings") or [] if isinstance(b, dict)]
            name = detail.get("name") or item.get("name") or site_id
            result.append(Site(name=str(name), bindings=bindings, id=site_id))
        return result

    @staticmethod
    def _binding_from_api(data: Dict[str, Any]) -> Binding:
        certificate = data.get("certificate")
        if not isinstance(certificate, dict):
            certificate = {}
        known = {"protocol", "hostname", "port", "ip_address", "certificate"}
        return Binding(
            protocol=str(data.get("protocol") or ""),
            host=str(data.get("hostname") or ""),
            port=data.get("port"),
            ip=str(data.get("ip_address") or "*"),
            certificate_hash=_optional_str(certificate.get("thumbprint")),
            certificate_store=_optional_str(certificate.get("store_name")),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @staticmethod
    def _binding_to_api(binding: Binding) -> Dict[str, Any]:
        data = dict(binding.extra)
        data.update({
            "protocol": binding.protocol,
            "hostname": binding.host,
            "port": binding.port,
            "ip_address": binding.ip,
        })
        if binding.certificate_hash:
            data["certificate"] = {"thumbprint": binding.certificate_hash, "store_name": binding.certificate_store}
        return data

    def commit(self, site: Site):
        if not site.id:
            raise GroupCommitError(site.name, "site has no id")

        payload = {"bindings": [self._binding_to_api(b) for b in site.bindings]}
        try:
            code, data = self.api.patch(self._site_path(site.id), payload)
        except APIError as e:
            raise GroupCommitError(site.name, str(e)) from e

        if code not in (200, 204):
            raise GroupCommitError(site.name, f"HTTP {code}: {data}")

    def close(self):
        self.api.close()

# ---------------------------
# Binding Reconciliation
# ---------------------------

@dataclass
class AppliedChange:
    site: str
    host: str
    fingerprint: str
    previous_fingerprint: Optional[str] = None

@dataclass
class SiteFailure:
    site: str
    error: str
    pending: List[AppliedChange] = field(default_factory=list)

@dataclass
class ReconcileResult:
    changes: List[AppliedChange] = field(default_factory=list)
    failures: List[SiteFailure] = field(default_factory=list)

def should_update(binding: Binding, identities: Iterable[str], update_empty_host: bool) -> bool:
    """Decide whether a binding is a rebinding target for the given identities."""
    if not binding.is_secure:
        return False
    if not (binding.host or "").strip():
        return update_empty_host
    return matches(binding.host, identities)

class BindingReconciler:
    """Repoint matching HTTPS bindings site by site, one commit per changed site."""

    def __init__(self, service: SiteConfigService, logger: Logger,
                 store_name: str = DEFAULT_STORE_NAME, dry_run: bool = False):
        self.service = service
        self.logger = logger
        self.store_name = store_name
        self.dry_run = dry_run

    def _plan_site(self, site: Site, certificate: Certificate, identities: IdentitySet,
                   update_empty_host: bool) -> Tuple[List[AppliedChange], List[Tuple[Binding, Optional[str], Optional[str]]]]:
        pending = []
        snapshot = []

        for binding in site.bindings:
            if not should_update(binding, identities, update_empty_host):
                continue

            if (binding.certificate_hash or "").upper() == certificate.fingerprint \
                    and binding.certificate_store == self.store_name:
                self.logger.debug(f"Site [{site.name}] binding [{binding.display_host}] already uses {certificate.fingerprint}")
                continue

            snapshot.append((binding, binding.certificate_hash, binding.certificate_store))
            pending.append(AppliedChange(
                site=site.name,
                host=binding.host,
                fingerprint=certificate.fingerprint,
                previous_fingerprint=binding.certificate_hash,
            ))
            binding.certificate_hash = certificate.fingerprint
            binding.certificate_store = self.store_name

        return pending, snapshot

    @staticmethod
    def _restore(snapshot: List[Tuple[Binding, Optional[str], Optional[str]]]):
        for binding, cert_hash, cert_store in snapshot:
            binding.certificate_hash = cert_hash
            binding.certificate_store = cert_store

    def reconcile(self, certificate: Certificate, identities: IdentitySet,
                  update_empty_host: bool) -> ReconcileResult:
        result = ReconcileResult()

        for site in self.service.sites():
            pending, snapshot = self._plan_site(site, certificate, identities, update_empty_host)
            if not pending:
                self.logger.debug(f"Site [{site.name}] has no bindings to update")
                continue

            if self.dry_run:
                self._restore(snapshot)
                for change in pending:
                    self.logger.info(f"DRYRUN: would update site [{site.name}] binding [{change.host or '*'}]", also_stdout=True)
                result.changes.extend(pending)
                continue

            try:
                self.service.commit(site)
            except GroupCommitError as e:
                self._restore(snapshot)
                result.failures.append(SiteFailure(site=site.name, error=e.message, pending=pending))
                self.logger.error(
                    f"Site [{site.name}] commit failed, {len(pending)} binding change(s) not applied: {e.message}",
                    also_stdout=True
                )
                continue

            for change in pending:
                self.logger.info(
                    f"Updated site [{site.name}] binding [{change.host or '*'}] to certificate {change.fingerprint}",
                    context={"previous": change.previous_fingerprint},
                    also_stdout=True
                )
            result.changes.extend(pending)

        return result

# ---------------------------
# Rebinding Run
# ---------------------------

@dataclass
class RunResult:
    fingerprint: str
    identities: List[str] = field(default_factory=list)
    installed: bool = False
    already_present: bool = False
    label: Optional[str] = None
    changes: List[AppliedChange] = field(default_factory=list)
    failures: List[SiteFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[PfxRebindError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": ("dry_run" if self.dry_run else "ok") if self.ok else "error",
            "certificate": {
                "fingerprint": self.fingerprint,
                "label": self.label,
                "installed": self.installed,
                "already_present": self.already_present,
            },
            "identities": self.identities,
            "changes": [asdict(c) for c in self.changes],
            "failures": [asdict(f) for f in self.failures],
            "warnings": self.warnings,
            "errors": [f"{type(e).__name__}: {e}" for e in self.errors],
            "version": VERSION,
        }

class CertRebinder:
    """Install a certificate and rebind every HTTPS binding its identities cover."""

    def __init__(self, store: CredentialStore, service: SiteConfigService, logger: Logger,
                 dry_run: bool = False, continue_on_install_error: bool = False):
        self.store = store
        self.service = service
        self.logger = logger
        self.dry_run = dry_run
        self.continue_on_install_error = continue_on_install_error

    def run(self, certificate: Certificate, update_empty_host: bool) -> RunResult:
        identities = extract_identities(certificate)
        result = RunResult(fingerprint=certificate.fingerprint, identities=identities.to_list(), dry_run=self.dry_run)

        for warning in identities.warnings:
            self.logger.warn(f"subjectAltName entry skipped: {warning}")
            result.warnings.append(str(warning))

        if not identities:
            self.logger.warn("Certificate carries no DNS identities; only empty-host bindings can be updated", also_stdout=True)

        if not self._install(certificate, identities, result):
            return result

        reconciler = BindingReconciler(self.service, self.logger, store_name=self.store.name, dry_run=self.dry_run)
        try:
            reconciled = reconciler.reconcile(certificate, identities, update_empty_host)
        except (APIError, ConfigurationError) as e:
            self.logger.error(f"Could not enumerate sites: {e}", also_stdout=True)
            result.errors.append(e)
            return result

        result.changes = reconciled.changes
        result.failures = reconciled.failures
        return result

    def _install(self, certificate: Certificate, identities: IdentitySet, result: RunResult) -> bool:
        """Install step; returns False when the run must stop."""
        try:
            if self.dry_run:
                result.label = credential_label(certificate, identities)
                result.already_present = self.store.find(certificate.fingerprint) is not None
                result.installed = result.already_present
                state = "present" if result.already_present else "absent, would install"
                self.logger.info(f"DRYRUN: certificate {certificate.fingerprint} {state} in store '{self.store.name}'", also_stdout=True)
                return True

            installed = install(certificate, identities, self.store)
        except StoreInstallError as e:
            result.errors.append(e)
            if self.continue_on_install_error:
                self.logger.warn(f"Certificate installation failed, continuing with rebinding: {e}", also_stdout=True)
                return True
            self.logger.error(f"Certificate installation failed, no bindings changed: {e}", also_stdout=True)
            return False

        result.installed = True
        result.already_present = installed.already_present
        result.label = installed.label
        if installed.already_present:
            self.logger.info(f"Certificate {installed.fingerprint} already present in store '{self.store.name}'", also_stdout=True)
        else:
            self.logger.info(
                f"Installed certificate {installed.fingerprint} into store '{self.store.name}' as \"{installed.label}\"",
                also_stdout=True
            )
        return True

# ---------------------------
# Configuration Management
# ---------------------------

class ConfigManager:
    """Handle configuration loading and validation."""

    @staticmethod
    def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not path:
            return {}

        config_path = Path(path).expanduser().resolve()

        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError("Config file must contain a YAML dictionary")

        return config

    @staticmethod
    def merge_args_with_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> Config:
        """Merge CLI arguments with config file."""
        # The -C/--config parameter is just the filename
        exclude_keys = {"config"}
        args_dict = {}

        for key, value in vars(args).items():
            if key in exclude_keys:
                continue
            if value is not None and value != "" and value is not False:
                args_dict[key] = value

        # Args take precedence
        merged = {**cfg, **args_dict}

        valid_keys = set(Config.__annotations__.keys())
        unknown_keys = set(merged.keys()) - valid_keys
        if unknown_keys:
            print(f"[!] Warning: Unknown config keys ignored: {', '.join(sorted(unknown_keys))}")
            merged = {k: v for k, v in merged.items() if k in valid_keys}

        try:
            return Config(**merged)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e)) from e

# ---------------------------
# Main Application
# ---------------------------

class PfxRebind:
    """Main application class."""

    def __init__(self):
        self.logger: Optional[Logger] = None
        self.config: Optional[Config] = None

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Install a PFX certificate and repoint matching HTTPS site bindings to it.",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        # Certificate settings
        parser.add_argument("--pfx", help="PKCS#12 (.pfx/.p12) or PEM certificate bundle")
        parser.add_argument("--password", help="Passphrase for the certificate bundle")
        parser.add_argument("--update-empty-host", dest="update_empty_host", action="store_true",
                            help="Also rebind HTTPS bindings that have no host name")

        # Site backend
        backend = parser.add_mutually_exclusive_group()
        backend.add_argument("--sites", dest="sites_file", help="YAML site configuration file")
        backend.add_argument("--api-host", dest="api_host", help="Web-server management API host")
        parser.add_argument("--api-port", dest="api_port", type=int, help=f"Management API port (default: {DEFAULT_API_PORT})")
        parser.add_argument("--api-token", dest="api_token", help="Management API access token")
        parser.add_argument("--api-prefix", dest="api_prefix", help=f"Management API path prefix (default: {API_PREFIX})")

        # Credential store
        parser.add_argument("--store-dir", dest="store_dir", help=f"Credential store directory (default: {DEFAULT_STORE_DIR})")
        parser.add_argument("--store-name", dest="store_name", help=f"Store name written to bindings (default: {DEFAULT_STORE_NAME})")

        # Behavior settings
        parser.add_argument("--insecure", action="store_true", help="Skip TLS verification")
        parser.add_argument("--dry-run", dest="dry_run", action="store_true",
                            help="Do not change anything; show planned actions")
        parser.add_argument("--continue-on-install-error", dest="continue_on_install_error", action="store_true",
                            help="Rebind even if the certificate could not be installed")

        # Timeout settings
        parser.add_argument("--timeout-connect", dest="timeout_connect", type=int)
        parser.add_argument("--timeout-read", dest="timeout_read", type=int)

        # Configuration
        parser.add_argument("-C", "--config", help="YAML config file")

        # Logging
        parser.add_argument("--log", help="Write a plain log to this file")
        parser.add_argument("--log-level", dest="log_level", choices=["standard", "debug"],
                            help="Log verbosity when --log is used (default: standard)")

        parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
        return parser

    def parse_arguments(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments."""
        return self.build_parser().parse_args(argv)

    def setup_logging(self, config: Config):
        """Setup logging."""
        log_level = LogLevel.DEBUG if config.log_level == "debug" else LogLevel.STANDARD
        self.logger = Logger(config.log, log_level)
        self.logger.set_operation_id(str(uuid.uuid4()))

    def print_effective_config(self, config: Config):
        """Print effective configuration."""
        print("[*] Effective configuration:")
        print(f"    pfx: {config.pfx}")
        print(f"    backend: {config.backend}")
        if config.api_host:
            print(f"    api: {config.api_host}:{config.api_port}{config.api_prefix}")
            print(f"    insecure: {config.insecure}")
            print(f"    timeout_connect: {config.timeout_connect}s")
            print(f"    timeout_read: {config.timeout_read}s")
        else:
            print(f"    sites: {config.sites_file}")
        print(f"    store: {config.store_name} ({config.store_dir})")
        print(f"    update_empty_host: {config.update_empty_host}")
        print(f"    dry_run: {config.dry_run}")
        if config.log:
            print(f"    log: {config.log}")
            print(f"    log_level: {config.log_level}")

    def build_site_service(self, config: Config) -> SiteConfigService:
        if config.api_host:
            return RestSiteConfig(ManagementAPI(config, self.logger), self.logger)
        return YamlSiteConfig(config.sites_file)

    def build_store(self, config: Config) -> CredentialStore:
        return DirectoryCredentialStore(config.store_dir, name=config.store_name)

    def print_report(self, result: RunResult):
        print("[*] Certificate identities:")
        for domain in result.identities:
            print(f"    - {domain}")
        if not result.identities:
            print("    (none)")

        print(f"[*] Bindings updated: {len(result.changes)}")
        for change in result.changes:
            print(f"    [{change.site}] {change.host or '*'} -> {change.fingerprint}")

        for failure in result.failures:
            print(f"[!] Site [{failure.site}] not updated ({len(failure.pending)} pending change(s)): {failure.error}")

    @staticmethod
    def exit_code(result: RunResult) -> int:
        if any(isinstance(e, APIError) for e in result.errors):
            return 2
        if result.errors:
            return 1
        if result.failures:
            return 3
        return 0

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main application entry point."""
        argv = sys.argv[1:] if argv is None else argv
        try:
            if not argv:
                self.build_parser().print_help()
                return 0

            args = self.parse_arguments(argv)

            # Load and merge configuration
            yaml_config = ConfigManager.load_yaml_config(args.config)
            self.config = ConfigManager.merge_args_with_config(args, yaml_config)

            self.setup_logging(self.config)
            self.print_effective_config(self.config)

            certificate = CertificateLoader.load(self.config.pfx, self.config.password)
            print(CertificateLoader.summarize(certificate))
            self.logger.info(f"loaded certificate fingerprint={certificate.fingerprint} subject={certificate.subject_name}")

            with self.build_store(self.config) as store, self.build_site_service(self.config) as service:
                rebinder = CertRebinder(
                    store, service, self.logger,
                    dry_run=self.config.dry_run,
                    continue_on_install_error=self.config.continue_on_install_error,
                )
                result = rebinder.run(certificate, self.config.update_empty_host)

            self.print_report(result)
            print(json.dumps(result.to_dict(), indent=2))

            code = self.exit_code(result)
            if code == 0:
                self.logger.info(f"Rebinding completed: {len(result.changes)} binding(s) updated")
            else:
                self.logger.error(f"Rebinding finished with errors: {len(result.failures)} site(s) failed, {len(result.errors)} error(s)")
            return code

        except ConfigurationError as e:
            print(f"[!] Configuration error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Configuration error: {e}")
            return 1
        except CredentialLoadError as e:
            print(f"[!] Certificate error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Certificate error: {e}")
            return 1
        except StoreInstallError as e:
            print(f"[!] Credential store error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Credential store error: {e}")
            return 1
        except APIError as e:
            print(f"[!] API error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"API error: {e}")
            return 2
        except KeyboardInterrupt:
            print("\n[!] Interrupted by user")
            return 130
        except Exception as e:
            print(f"[!] Unexpected error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Unexpected error: {e}")
            return 1
        finally:
            if self.logger:
                self.logger.close()


def main():
    """Main entry point."""
    app = PfxRebind()
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
