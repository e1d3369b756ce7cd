"""
Run-scoped SSH credentials.

Installs a private key and a pinned known-hosts list for exactly one run and
discards them when the run ends, whatever the outcome.

Design:
- Context manager pattern for guaranteed release (success, failure, cancellation)
- Validation happens before anything is written, so a bad key or an
  untrusted host fails the run before any network operation
- Secret material never reaches a log line or exception message
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
import re
import shlex
import struct
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from sitedeploy.core.implementations import (
    RealFileSystemService,
    SubprocessExecutor,
    SystemToolLocator,
)
from sitedeploy.core.protocols import FileSystemService, ProcessExecutor, ToolLocator
from sitedeploy.exceptions import CredentialError

logger = logging.getLogger(__name__)

KEY_FILE_NAME = 'id_deploy'
KNOWN_HOSTS_FILE_NAME = 'known_hosts'
OPENSSH_MAGIC = b'openssh-key-v1\x00'
DEFAULT_SECRET_ENV = ('SSH_KEY', 'KNOWN_HOSTS')

_ARMOR_RE = re.compile(
    r'-----BEGIN (?P<label>[A-Z0-9 ]*)PRIVATE KEY-----\s*\n'
    r'(?P<body>.*?)\n?'
    r'-----END (?P=label)PRIVATE KEY-----',
    re.DOTALL
)


def scrub_environ(environ: Dict[str, str], secret_names: Iterable[str] = DEFAULT_SECRET_ENV) -> Dict[str, str]:
    """Copy of environ without the variables that carry credential inputs.

    Child processes (git, the site builder and anything they load) must not
    see the deploy key or the trusted host list.
    """
    secret_names = set(secret_names)
    return {name: value for name, value in environ.items() if name not in secret_names}


def _host_pattern_matches(name: str, pattern: str) -> bool:
    """known_hosts wildcards: only '*' and '?' are special; '[' ']' are literal."""
    regex = re.escape(pattern).replace(r'\*', '.*').replace(r'\?', '.')
    return re.fullmatch(regex, name) is not None


@dataclass(frozen=True)
class TrustEntry:
    """
    One known-hosts line.

    Attributes:
        patterns: Host patterns ("example.org", "*.example.org", "[h]:2222",
                  "!bad.example.org"); empty for hashed entries
        hashed: (salt, digest) for "|1|salt|hash" entries
        key_type: e.g. "ssh-ed25519"
        key: Base64 public key blob
        marker: "@cert-authority", "@revoked" or None
    """
    patterns: tuple
    key_type: str
    key: str
    hashed: Optional[tuple] = None
    marker: Optional[str] = None

    def matches(self, host: str, port: int = 22) -> bool:
        """Return True if this entry applies to host on port (OpenSSH rules)."""
        name = host.lower() if port == 22 else f"[{host.lower()}]:{port}"

        if self.hashed is not None:
            salt, digest = self.hashed
            mac = hmac.new(salt, name.encode(), hashlib.sha1).digest()
            return hmac.compare_digest(mac, digest)

        matched = False
        for pattern in self.patterns:
            negated = pattern.startswith('!')
            pattern = pattern[1:] if negated else pattern
            if _host_pattern_matches(name, pattern.lower()):
                if negated:
                    return False
                matched = True
        return matched


@dataclass
class Credential:
    """
    Installed run credential.

    Attributes:
        key_path: Private key file (mode 0600)
        known_hosts_path: Pinned known-hosts file
        host: Host the credential was provisioned for
        port: SSH port the trust entry was matched on
    """
    key_path: Path
    known_hosts_path: Path
    host: str
    port: int = 22
    trust_entries: List[TrustEntry] = field(default_factory=list)

    def ssh_options(self) -> List[str]:
        """ssh flags that pin identity and trust, and forbid prompts."""
        return [
            "-i", str(self.key_path),
            "-o", "IdentitiesOnly=yes",
            "-o", f"UserKnownHostsFile={self.known_hosts_path}",
            "-o", "GlobalKnownHostsFile=/dev/null",
            "-o", "StrictHostKeyChecking=yes",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=10",
        ]

    def ssh_command(self, port: Optional[int] = None) -> str:
        """Remote shell string for rsync -e."""
        args = ["ssh", "-p", str(port or self.port)] + self.ssh_options()
        return ' '.join(shlex.quote(a) for a in args)


def parse_known_hosts(text: str) -> List[TrustEntry]:
    """
    Parse known-hosts text.

    Blank lines and comments are skipped.

    Raises:
        CredentialError: If a line is malformed (line number reported, not content)
    """
    entries = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue

        fields = line.split()
        marker = None
        if fields[0].startswith('@'):
            marker = fields.pop(0)
            if marker not in ('@cert-authority', '@revoked'):
                raise CredentialError(f"known_hosts line {lineno}: unknown marker {marker}")

        if len(fields) < 3:
            raise CredentialError(f"known_hosts line {lineno}: expected 'hosts keytype key'")

        hosts, key_type, key = fields[0], fields[1], fields[2]
        try:
            base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError):
            raise CredentialError(f"known_hosts line {lineno}: public key is not valid base64")

        if hosts.startswith('|1|'):
            parts = hosts.split('|')
            try:
                hashed = (base64.b64decode(parts[2]), base64.b64decode(parts[3]))
            except (IndexError, binascii.Error, ValueError):
                raise CredentialError(f"known_hosts line {lineno}: malformed hashed host")
            entries.append(TrustEntry((), key_type, key, hashed=hashed, marker=marker))
        else:
            entries.append(TrustEntry(tuple(hosts.split(',')), key_type, key, marker=marker))
    return entries


def validate_key_material(key_material: str) -> str:
    """
    Check that key_material is an unencrypted private key.

    Returns:
        The key text normalized to end with a newline (ssh rejects
        OpenSSH keys without one)

    Raises:
        CredentialError: Missing armor, bad base64, or passphrase protection
    """
    if not key_material or not key_material.strip():
        raise CredentialError("SSH key is empty")

    text = key_material.strip().replace('\r\n', '\n')
    match = _ARMOR_RE.fullmatch(text)
    if not match:
        raise CredentialError(
            "SSH key is not a private key (expected '-----BEGIN ... PRIVATE KEY-----' armor)"
        )

    lines = match.group('body').splitlines()
    if any('ENCRYPTED' in l for l in lines if ':' in l):
        raise CredentialError("SSH key is passphrase protected; a deploy key must not need a prompt")
    body = ''.join(l.strip() for l in lines if ':' not in l)
    try:
        blob = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise CredentialError("SSH key body is not valid base64")
    if not blob:
        raise CredentialError("SSH key body is empty")

    if match.group('label') == 'OPENSSH ':
        if not blob.startswith(OPENSSH_MAGIC):
            raise CredentialError("OpenSSH key has an invalid header")
        offset = len(OPENSSH_MAGIC)
        try:
            (length,) = struct.unpack('>I', blob[offset:offset + 4])
            cipher = blob[offset + 4:offset + 4 + length]
        except struct.error:
            raise CredentialError("OpenSSH key is truncated")
        if cipher != b'none':
            raise CredentialError("SSH key is passphrase protected; a deploy key must not need a prompt")
    elif match.group('label') == 'ENCRYPTED ':
        raise CredentialError("SSH key is passphrase protected; a deploy key must not need a prompt")

    return text + '\n'


class CredentialProvisioner:
    """Installs and discards run-scoped SSH credentials."""

    def __init__(
        self,
        filesystem: Optional[FileSystemService] = None,
        process_executor: Optional[ProcessExecutor] = None,
        tool_locator: Optional[ToolLocator] = None
    ):
        self.fs = filesystem or RealFileSystemService()
        self.process = process_executor or SubprocessExecutor()
        self.tools = tool_locator or SystemToolLocator()

    @contextmanager
    def provision(
        self,
        key_material: str,
        known_hosts: str,
        target_host: str,
        port: int = 22
    ) -> Iterator[Credential]:
        """
        Install a credential for one run.

        Usage:
            with provisioner.provision(key, known_hosts, "example.org") as cred:
                synchronizer.sync_mirror(output, target, cred)

        Raises:
            CredentialError: Malformed key, malformed known_hosts, or no
                (non-revoked) entry trusting target_host on port
        """
        key_text = validate_key_material(key_material)
        entries = parse_known_hosts(known_hosts or '')
        matching = [e for e in entries if e.matches(target_host, port)]
        if any(e.marker == '@revoked' for e in matching):
            raise CredentialError(f"known_hosts marks a key for {target_host} as revoked")
        if not matching:
            raise CredentialError(
                f"No known_hosts entry trusts {target_host}"
                f"{'' if port == 22 else f' on port {port}'}\n"
                f"Add one with: ssh-keyscan -p {port} {target_host}"
            )

        try:
            workdir = Path(self.fs.make_temp_dir(prefix='sitedeploy-cred-'))
        except OSError as e:
            raise CredentialError(f"Cannot create run credential directory: {e}")

        try:
            credential = self._install(workdir, key_text, known_hosts, target_host, port)
            credential.trust_entries = matching
            self._verify_with_ssh_keygen(credential.key_path)
            logger.info(f"Provisioned run credential for {target_host} ({len(matching)} trusted key(s))")
            yield credential
        finally:
            self._discard(workdir)

    @staticmethod
    def _install(workdir: Path, key_text: str, known_hosts: str, host: str, port: int) -> Credential:
        key_path = workdir / KEY_FILE_NAME
        known_hosts_path = workdir / KNOWN_HOSTS_FILE_NAME
        try:
            os.chmod(workdir, 0o700)
            _write_private(key_path, key_text)
            _write_private(known_hosts_path, known_hosts.strip() + '\n')
        except OSError as e:
            raise CredentialError(f"Cannot install run credential: {e}")
        return Credential(key_path=key_path, known_hosts_path=known_hosts_path, host=host, port=port)

    def _verify_with_ssh_keygen(self, key_path: Path) -> None:
        """Derive the public key; rejects keys ssh itself cannot load."""
        if not self.tools.has_tool('ssh-keygen'):
            logger.debug("ssh-keygen not available, skipping key load check")
            return
        try:
            result = self.process.run(
                ['ssh-keygen', '-y', '-P', '', '-f', str(key_path)],
                timeout=10
            )
        except subprocess.TimeoutExpired:
            raise CredentialError("ssh-keygen timed out while loading the SSH key")
        if result.returncode != 0:
            raise CredentialError(f"SSH key could not be loaded: {result.stderr.strip()}")

    def _discard(self, workdir: Path) -> None:
        """Overwrite and remove the key directory. Never raises."""
        key_path = workdir / KEY_FILE_NAME
        try:
            if key_path.exists():
                size = key_path.stat().st_size
                with open(key_path, 'r+b') as f:
                    f.write(b'\x00' * size)
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"Failed to overwrite run key before removal: {e}")
        try:
            if self.fs.exists(workdir):
                self.fs.rmtree(workdir)
            logger.debug("Discarded run credential")
        except OSError as e:
            logger.error(f"Failed to remove run credential directory {workdir}: {e}")


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'w') as f:
        f.write(content)
