"""
cairn/runtime/kubeadm/output.py

Recovers join credentials from kubeadm's human-readable output. kubeadm has no
machine-readable mode for these values, so the markers below are the contract;
the fixtures under cairn/tests/fixtures pin the formats we accept.
"""

from __future__ import annotations

from typing import Dict, List

from cairn.models.runtime import JoinCredentials

JOIN_MARKER = "kubeadm join"
NOTE_MARKER = "Please note"
CERT_KEY_MARKER = "Using certificate key:"
CERT_KEY_LENGTH = 64

_FLAGS = {
    "--token": "token",
    "--discovery-token-ca-cert-hash": "discovery_ca_hash",
    "--certificate-key": "certificate_key",
}


class JoinOutputParseError(ValueError):
    """Expected markers were missing from kubeadm output."""


def _tokens(segment: str) -> List[str]:
    return segment.replace("\\", " ").split()


def parse_join_output(output: str) -> JoinCredentials:
    """
    Parse the first `kubeadm join ...` command printed by `kubeadm init` or
    `kubeadm token create --print-join-command`.

    The certificate key is only present in control-plane join commands; it is
    left empty otherwise.

    Raises:
        JoinOutputParseError: if no join command, token or CA hash is found.
    """
    parts = output.split(JOIN_MARKER, 1)
    if len(parts) != 2:
        raise JoinOutputParseError("no 'kubeadm join' command found in output")
    segment = parts[1].split(NOTE_MARKER, 1)[0]

    found: Dict[str, str] = {}
    tokens = _tokens(segment)
    for flag, value in zip(tokens, tokens[1:]):
        field = _FLAGS.get(flag)
        if field is not None and field not in found:
            found[field] = value

    if "certificate_key" in found:
        found["certificate_key"] = found["certificate_key"][:CERT_KEY_LENGTH]

    missing = [
        f
        for f in ("--token", "--discovery-token-ca-cert-hash")
        if _FLAGS[f] not in found
    ]
    if missing:
        raise JoinOutputParseError(
            f"join command is missing {', '.join(missing)}: {segment.strip()!r}"
        )
    return JoinCredentials(**found)


def parse_certificate_key(output: str) -> str:
    """
    Parse the key printed by `kubeadm init phase upload-certs --upload-certs`.

    Raises:
        JoinOutputParseError: if the marker or the key is missing.
    """
    parts = output.split(CERT_KEY_MARKER)
    if len(parts) != 2:
        raise JoinOutputParseError("certificate key marker not found in output")
    words = parts[1].split()
    if not words:
        raise JoinOutputParseError("certificate key is empty")
    return words[0][:CERT_KEY_LENGTH]
