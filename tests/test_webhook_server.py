import base64
import json
import os
import ssl
from unittest import mock

import pytest

import webhook_server
from mutation import ADMISSION_WEBHOOK_ANNOTATION_INJECT_KEY as INJECT_KEY
from sidecar_config import InjectionProfile, ProfileRegistry

SIDECAR = {"name": "sidecar", "image": "busybox"}


@pytest.fixture
def client():
    webhook_server.app.config["TESTING"] = True
    webhook_server.app.config["SIDECAR_CONFIGS"] = ProfileRegistry({"web": InjectionProfile(containers=[SIDECAR])})
    with webhook_server.app.test_client() as client:
        yield client
    webhook_server.app.config["SIDECAR_CONFIGS"] = ProfileRegistry()


def admission_review(annotations=None, namespace="default", uid="test-uid-123"):
    metadata = {"name": "demo", "namespace": namespace}
    if annotations is not None:
        metadata["annotations"] = annotations
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": "Pod"},
            "namespace": namespace,
            "operation": "CREATE",
            "object": {
                "metadata": metadata,
                "spec": {"containers": [{"name": "app", "image": "nginx"}]},
            },
        },
    }


def post(client, body, content_type="application/json"):
    data = body if isinstance(body, (str, bytes)) else json.dumps(body)
    return client.post("/inject", data=data, content_type=content_type)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.data == b"ok"


def test_empty_body(client):
    response = post(client, b"")
    assert response.status_code == 400


def test_wrong_content_type(client):
    response = post(client, admission_review(), content_type="text/plain")
    assert response.status_code == 415


def test_undecodable_body(client):
    response = post(client, "{not json")
    assert response.status_code == 200
    review = response.get_json()
    assert review["kind"] == "AdmissionReview"
    assert review["response"]["allowed"] is False
    assert review["response"]["status"]["message"]


def test_review_without_request(client):
    response = post(client, {"kind": "AdmissionReview"})
    assert response.get_json()["response"]["status"]["message"] == "AdmissionReview has no request"


def test_allow_without_annotation(client):
    review = post(client, admission_review()).get_json()
    assert review["apiVersion"] == "admission.k8s.io/v1"
    assert review["response"] == {"uid": "test-uid-123", "allowed": True}


def test_unknown_profile_is_allowed(client):
    review = post(client, admission_review({INJECT_KEY: "missing"})).get_json()
    assert review["response"] == {"uid": "test-uid-123", "allowed": True}


def test_inject_returns_patch(client):
    review = post(client, admission_review({INJECT_KEY: "web"})).get_json()
    response = review["response"]
    assert response["uid"] == "test-uid-123"
    assert response["allowed"] is True
    assert response["patchType"] == "JSONPatch"
    patch = json.loads(base64.b64decode(response["patch"]))
    assert patch[0] == {"op": "add", "path": "/spec/containers/-", "value": SIDECAR}
    assert patch[-1]["path"] == "/metadata/annotations/simple-sidecar.cemtml.ai~1status"


def test_deny_carries_message(client):
    webhook_server.app.config["SIDECAR_CONFIGS"] = ProfileRegistry(
        {"web": InjectionProfile(containers=[{"name": "bad", "ports": {1}}])})
    response = post(client, admission_review({INJECT_KEY: "web"})).get_json()["response"]
    assert response["allowed"] is False
    assert "patch" not in response
    assert "not JSON serializable" in response["status"]["message"]


def test_configure_logging_level(monkeypatch):
    monkeypatch.setenv("DEBUG_LEVEL", "debug")
    webhook_server.configure_logging()
    assert webhook_server.app.logger.level == webhook_server.logging.DEBUG
    assert webhook_server.logging.getLogger("mutation").level == webhook_server.logging.DEBUG

    monkeypatch.setenv("DEBUG_LEVEL", "bogus")
    webhook_server.configure_logging()
    assert webhook_server.logging.getLogger("mutation").level == webhook_server.logging.INFO
    assert len(webhook_server.logging.getLogger("mutation").handlers) == 1


def test_main_exits_on_bad_config(monkeypatch, tmp_path):
    monkeypatch.setattr(webhook_server, "CONFIG_FILE", str(tmp_path / "missing.yaml"))
    with mock.patch.object(webhook_server.app, "run") as run:
        with pytest.raises(SystemExit) as exc:
            webhook_server.main()
    assert exc.value.code == 1
    run.assert_not_called()


def test_main_exits_without_certificates(monkeypatch, tmp_path):
    config_file = tmp_path / "sidecarconfig.yaml"
    config_file.write_text("web:\n  containers:\n    - name: sidecar\n")
    monkeypatch.setattr(webhook_server, "CONFIG_FILE", str(config_file))
    monkeypatch.setattr(webhook_server, "CERT_FILE", str(tmp_path / "tls.crt"))
    monkeypatch.setattr(webhook_server, "KEY_FILE", str(tmp_path / "tls.key"))
    with mock.patch.object(webhook_server.app, "run") as run:
        with pytest.raises(SystemExit):
            webhook_server.main()
    run.assert_not_called()


def test_main_runs_with_tls(monkeypatch, tmp_path):
    config_file = tmp_path / "sidecarconfig.yaml"
    config_file.write_text("web:\n  containers:\n    - name: sidecar\n")
    cert, key = tmp_path / "tls.crt", tmp_path / "tls.key"
    cert.write_text("cert")
    key.write_text("key")
    monkeypatch.setattr(webhook_server, "CONFIG_FILE", str(config_file))
    monkeypatch.setattr(webhook_server, "CERT_FILE", str(cert))
    monkeypatch.setattr(webhook_server, "KEY_FILE", str(key))
    with mock.patch.object(webhook_server.app, "run") as run, \
            mock.patch.object(webhook_server, "CertificateReloader") as reloader:
        webhook_server.main()
    reloader.assert_called_once_with(str(cert), str(key))
    run.assert_called_once_with(host="0.0.0.0", port=webhook_server.PORT, ssl_context=reloader.return_value.context)
    assert webhook_server.app.config["SIDECAR_CONFIGS"].names() == ["web"]
    webhook_server.app.config["SIDECAR_CONFIGS"] = ProfileRegistry()


class FakeContexts:
    """Replaces ssl.SSLContext, recording which certificate pairs were loaded."""

    def __init__(self):
        self.created = []
        self.fail = False

    def __call__(self, protocol):
        context = mock.Mock()
        if self.fail:
            context.load_cert_chain.side_effect = ssl.SSLError("bad certificate")
        self.created.append(context)
        return context


def touch(path, seconds):
    os.utime(path, ns=(seconds * 10**9, seconds * 10**9))


@pytest.fixture
def certificate_pair(tmp_path):
    cert, key = tmp_path / "tls.crt", tmp_path / "tls.key"
    cert.write_text("cert")
    key.write_text("key")
    touch(cert, 1000)
    touch(key, 1000)
    return str(cert), str(key)


def test_certificate_reloaded_after_rotation(monkeypatch, certificate_pair):
    contexts = FakeContexts()
    monkeypatch.setattr(webhook_server.ssl, "SSLContext", contexts)
    reloader = webhook_server.CertificateReloader(*certificate_pair)
    assert reloader.context.sni_callback == reloader._on_handshake
    first = reloader.reload_if_changed()
    assert reloader.reload_if_changed() is first

    touch(certificate_pair[0], 2000)
    ssl_socket = mock.Mock()
    reloader._on_handshake(ssl_socket, "simple-sidecar.default.svc", reloader.context)

    assert ssl_socket.context is not first
    assert ssl_socket.context is contexts.created[-1]
    ssl_socket.context.load_cert_chain.assert_called_once_with(*certificate_pair)
    assert reloader.reload_if_changed() is ssl_socket.context


def test_broken_rotation_keeps_previous_certificate(monkeypatch, certificate_pair):
    contexts = FakeContexts()
    monkeypatch.setattr(webhook_server.ssl, "SSLContext", contexts)
    reloader = webhook_server.CertificateReloader(*certificate_pair)
    previous = reloader.reload_if_changed()

    contexts.fail = True
    touch(certificate_pair[1], 2000)
    ssl_socket = mock.Mock(spec=["context"])
    ssl_socket.context = reloader.context
    reloader._on_handshake(ssl_socket, None, reloader.context)

    assert ssl_socket.context is reloader.context
    contexts.fail = False
    assert reloader.reload_if_changed() is not previous
