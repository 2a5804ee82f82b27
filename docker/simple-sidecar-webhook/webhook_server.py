import os
import json
import logging
import base64
import ssl
import sys
import threading

from flask import Flask, request, jsonify, Response
from flask import cli as flask_cli

import mutation
import secretgen
from sidecar_config import ConfigError, ProfileRegistry, load_config

app = Flask(__name__)
app.config["SIDECAR_CONFIGS"] = ProfileRegistry()

# Read server settings from environment variables
PORT = int(os.getenv('PORT', '8443'))
CONFIG_FILE = os.getenv('CONFIG_FILE', '/etc/webhook/config/sidecarconfig.yaml')
CERT_FILE = os.getenv('CERT_FILE', '/etc/webhook/certs/tls.crt')
KEY_FILE = os.getenv('KEY_FILE', '/etc/webhook/certs/tls.key')
GENERATE_CERTS = os.getenv('GENERATE_CERTS', 'false').lower() == 'true'

WEBHOOK_INJECT_PATH = '/inject'


def configure_logging():
    # Read the DEBUG_LEVEL from environment variables, defaulting to WARNING
    DEBUG_LEVEL = os.getenv('DEBUG_LEVEL', 'WARNING').upper()

    logging_levels = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    log_level = logging_levels.get(DEBUG_LEVEL, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    # Flask's logger and the mutation engine's loggers share one handler
    for logger in (app.logger, logging.getLogger('mutation'), logging.getLogger('sidecar_config'),
                   logging.getLogger('secretgen')):
        if logger.hasHandlers():
            logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(log_level)
        logger.propagate = False


class CertificateReloader(object):
    """TLS server context that picks up rotated certificates.

    Every handshake checks the modification times of the certificate and key
    files and swaps in a freshly loaded context when either has changed. If the
    new pair cannot be loaded the previous one keeps serving.
    """

    def __init__(self, cert_file, key_file):
        self.cert_file = cert_file
        self.key_file = key_file
        self._lock = threading.Lock()
        self._mtimes = self._current_mtimes()
        self._loaded = self._new_context()
        self.context = self._new_context()
        self.context.sni_callback = self._on_handshake

    def _current_mtimes(self):
        return (os.stat(self.cert_file).st_mtime_ns, os.stat(self.key_file).st_mtime_ns)

    def _new_context(self):
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_file, self.key_file)
        return context

    def reload_if_changed(self):
        mtimes = self._current_mtimes()
        with self._lock:
            if mtimes != self._mtimes:
                self._loaded = self._new_context()
                self._mtimes = mtimes
                app.logger.info("Reloaded TLS certificate from %s", self.cert_file)
            return self._loaded

    def _on_handshake(self, ssl_socket, server_name, context):
        try:
            ssl_socket.context = self.reload_if_changed()
        except (OSError, ssl.SSLError) as e:
            app.logger.error("Failed to reload TLS certificate, keeping the previous one: %s", e)
        return None


def build_response(uid, outcome=None, message=None):
    """Wrap an admission outcome into an AdmissionReview response."""
    response = {
        "uid": uid,
        "allowed": False,
    }
    if outcome is not None:
        response["allowed"] = outcome.allowed
        if outcome.patch is not None:
            response["patchType"] = "JSONPatch"
            response["patch"] = base64.b64encode(outcome.patch).decode('utf-8')
        if isinstance(outcome, mutation.Deny):
            message = outcome.message
    if message is not None:
        response["status"] = {"message": message}

    return {
        "kind": "AdmissionReview",
        "apiVersion": "admission.k8s.io/v1",
        "response": response
    }


def decode_admission_request(body):
    """Return the ``request`` part of an AdmissionReview, raising ValueError if malformed."""
    review = json.loads(body)
    if not isinstance(review, dict):
        raise ValueError("AdmissionReview must be a JSON object")
    admission_request = review.get('request')
    if not isinstance(admission_request, dict):
        raise ValueError("AdmissionReview has no request")
    if not isinstance(admission_request.get('object'), dict):
        raise ValueError("AdmissionReview request has no object")
    return admission_request


@app.route('/healthz', methods=['GET'])
def health():
    return "ok", 200


@app.route(WEBHOOK_INJECT_PATH, methods=['POST'])
def inject():
    body = request.get_data()
    if not body:
        app.logger.warning("empty body")
        return Response("empty body", status=400)

    # verify the content type is accurate
    content_type = request.headers.get('Content-Type', '')
    if content_type.split(';')[0].strip() != 'application/json':
        app.logger.warning("Content-Type=%s, expect application/json", content_type)
        return Response("invalid Content-Type, expect `application/json`", status=415)

    try:
        admission_request = decode_admission_request(body)
    except ValueError as e:
        app.logger.warning("Can't decode body: %s", e)
        return jsonify(build_response('', message=str(e)))

    uid = admission_request.get('uid', '')
    obj = admission_request['object']
    pod = mutation.PodSnapshot.from_object(obj, admission_request.get('namespace', ''))
    app.logger.info(
        "AdmissionReview for Kind=%s, Namespace=%s Name=%s (%s) UID=%s Operation=%s UserInfo=%s",
        admission_request.get('kind'), admission_request.get('namespace'), admission_request.get('name'),
        pod.name, uid, admission_request.get('operation'), admission_request.get('userInfo'))
    app.logger.debug("Admission Review Request object: %s", json.dumps(obj, indent=2))

    outcome = mutation.mutate(pod, app.config["SIDECAR_CONFIGS"])

    admission_response = build_response(uid, outcome)
    app.logger.debug("Sending admission response: %s", json.dumps(admission_response, indent=2))
    return jsonify(admission_response)


def main():
    # Configure logger
    configure_logging()

    try:
        app.config["SIDECAR_CONFIGS"] = load_config(CONFIG_FILE)
    except ConfigError as e:
        app.logger.critical("Failed to load configuration: %s", e)
        sys.exit(1)

    if GENERATE_CERTS:
        secretgen.main()

    # Ensure certificates exist
    if not os.path.exists(CERT_FILE) or not os.path.exists(KEY_FILE):
        app.logger.critical("Certificates not found at %s and %s. Exiting...", CERT_FILE, KEY_FILE)
        sys.exit(1)

    flask_cli.show_server_banner = lambda *x: None

    app.logger.info("Starting webhook server on port %s...", PORT)
    reloader = CertificateReloader(CERT_FILE, KEY_FILE)
    app.run(host='0.0.0.0', port=PORT, ssl_context=reloader.context)


if __name__ == '__main__':
    main()
