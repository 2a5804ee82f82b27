#!/usr/bin/python3
import base64
import os
import argparse
import subprocess
from shutil import which

CA_KEY = "ca.key"
CA_CERT = "ca.crt"
SERVER_KEY = "tls.key"
SERVER_CERT = "tls.crt"


def openssl_config(service, namespace):
	return """[req]
default_bits   = 2048
distinguished_name = req_distinguished_name
req_extensions     = v3_req
prompt = no
[ req_distinguished_name ]
CN  = {service}.{namespace}.svc
[ v3_req ]
basicConstraints = CA:FALSE
keyUsage = nonRepudiation, digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = @alt_names
[alt_names]
DNS.1 = {service}
DNS.2 = {service}.{namespace}
DNS.3 = {service}.{namespace}.svc
""".format(service = service, namespace = namespace)


def run_openssl(directory, *args):
	"Run one openssl command; a non-zero exit raises CalledProcessError"
	return subprocess.run(["openssl"] + list(args), cwd=directory, stderr=subprocess.DEVNULL, check=True)


def generate_keys(service, namespace, directory="generated"):
	"Generate a CA and a server certificate for the webhook service"

	if not which("openssl"):
		raise RuntimeError("Unable to detect the openssl CLI tool on the path")

	if not os.path.exists(directory):
		os.makedirs(directory)

	print("==> Generating CA")

	run_openssl(directory, "genrsa", "-out", CA_KEY, "2048")
	run_openssl(directory, "req", "-x509", "-new", "-nodes", "-key", CA_KEY, "-sha256", "-days", "365",
		"-out", CA_CERT, "-subj", "/CN=simple-sidecar-ca")

	print("==> Creating configuration")

	with open(os.path.join(directory, "server.conf"), "w") as f:
		f.write(openssl_config(service, namespace))

	print("==> Generating private key and certificate")

	run_openssl(directory, "genrsa", "-out", SERVER_KEY, "2048")
	run_openssl(directory, "req", "-new", "-key", SERVER_KEY, "-out", "server.csr", "-config", "server.conf")
	run_openssl(directory, "x509", "-req", "-in", "server.csr", "-CA", CA_CERT, "-CAkey", CA_KEY,
		"-CAcreateserial", "-out", SERVER_CERT, "-days", "365", "-sha256",
		"-extensions", "v3_req", "-extfile", "server.conf")

	for leftover in ("server.csr", "ca.srl", "server.conf"):
		path = os.path.join(directory, leftover)
		if os.path.exists(path):
			os.remove(path)

	print("==> Key material generated")

	with open(os.path.join(directory, CA_CERT), "rb") as f:
		ca_bundle = base64.b64encode(f.read()).decode("ascii")
		print("Use this as the caBundle:")
		print(ca_bundle)

	print("==> Command to create secret")
	print("Run this to upload the key material to a Kubernetes secret")
	print()

	print(
		"kubectl --namespace={0} create secret generic {1}-tls --from-file=tls.crt={2}/{3} --from-file=tls.key={2}/{4} --from-file=ca.crt={2}/{5}".format(
			namespace, service, directory, SERVER_CERT, SERVER_KEY, CA_CERT
		)
	)
	return ca_bundle

if __name__ == "__main__":
	parser = argparse.ArgumentParser(description = 'Simple Sidecar Webhook Keygen')
	parser.add_argument("namespace", nargs = "?", default = "simple-sidecar", help = "Destination namespace")
	parser.add_argument("--service", default = "simple-sidecar", help = "Webhook service name")
	parser.add_argument("--directory", default = "generated", help = "Output directory")

	args = parser.parse_args()

	generate_keys(args.service, args.namespace, args.directory)
