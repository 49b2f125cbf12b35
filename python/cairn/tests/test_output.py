import pytest

from cairn.runtime.kubeadm.output import (
    JoinOutputParseError,
    parse_certificate_key,
    parse_join_output,
)
from cairn.tests.fakes import fixture_text

HASH_119 = "sha256:7c2e69131a36ae2a042a339b33381c6d0d43887e2de83720eff5359e26aec866"


def test_parse_init_output_v119():
    creds = parse_join_output(fixture_text("kubeadm_init_v1.19.txt"))
    assert creds.token == "comwfr.ne6j5bnvqqmltj0c"
    assert creds.discovery_ca_hash == HASH_119
    assert creds.certificate_key == (
        "2b9a1fd97b1c4e5d8e7a6f5b4c3d2e1f0a9b8c7d6e5f4a3b2c1d0e9f8a7b6c5d"
    )


def test_parse_init_output_with_tab_continuations():
    creds = parse_join_output(fixture_text("kubeadm_init_v1.22.txt"))
    assert creds.token == "9a08jv.c0izixklcxtmnze7"
    assert creds.discovery_ca_hash.startswith("sha256:0c9f5d9a")
    assert len(creds.certificate_key) == 64


def test_parse_token_create_has_no_certificate_key():
    creds = parse_join_output(fixture_text("kubeadm_token_create.txt"))
    assert creds.token == "abcdef.0123456789abcdef"
    assert creds.discovery_ca_hash == HASH_119
    assert creds.certificate_key == ""


def test_certificate_key_is_truncated_to_64_chars():
    out = (
        "kubeadm join 10.0.0.1:6443 --token a.b "
        "--discovery-token-ca-cert-hash sha256:ff "
        "--control-plane --certificate-key " + "a" * 64 + "bbbb"
    )
    # anything past 64 characters is dropped
    assert parse_join_output(out).certificate_key == "a" * 64


def test_missing_join_command():
    with pytest.raises(JoinOutputParseError, match="no 'kubeadm join'"):
        parse_join_output("[init] Using Kubernetes version: v1.22.15\n")


def test_missing_ca_hash():
    with pytest.raises(JoinOutputParseError, match="discovery-token-ca-cert-hash"):
        parse_join_output("kubeadm join 10.0.0.1:6443 --token abc.def\n")


def test_parse_upload_certs():
    key = parse_certificate_key(fixture_text("kubeadm_upload_certs.txt"))
    assert key == "e4f1c2b3a4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b1c2d3e4f5a6b7c8d9e0f1"


def test_parse_upload_certs_without_marker():
    with pytest.raises(JoinOutputParseError):
        parse_certificate_key("[upload-certs] Storing the certificates\n")


def test_parse_upload_certs_with_empty_key():
    with pytest.raises(JoinOutputParseError, match="empty"):
        parse_certificate_key("[upload-certs] Using certificate key:\n")
