#!/usr/bin/python

import os
import logging
from kubernetes.client.rest import ApiException
from kubernetes import client, config

# Key generation script
import keygen

logger = logging.getLogger(__name__)

SERVICE_NAME = os.getenv("SERVICE_NAME", "simple-sidecar")
POD_NAMESPACE = os.getenv("POD_NAMESPACE", "simple-sidecar")
WEBHOOK_NAME = os.getenv("WEBHOOK_NAME", "simple-sidecar")

GENERATED_CERTS_FOLDER = os.path.dirname(os.getenv("CERT_FILE", "/etc/webhook/certs/tls.crt"))


def update_ca_bundle(api_instance, webhook_name, ca_bundle):
	"""Set the caBundle of every matching webhook; returns the patched configuration or None."""
	found = None
	api_response = api_instance.list_mutating_webhook_configuration()

	for result in api_response.items:
		logger.debug("Found mutating webhook configuration %s", result.metadata.name)
		if webhook_name in result.metadata.name:
			found = result
			break

	if found is None:
		logger.warning("Could not find mutating webhook configuration matching %s", webhook_name)
		return None

	for webhook in found.webhooks or []:
		if webhook_name in webhook.name:
			webhook.client_config.ca_bundle = ca_bundle

	response = api_instance.patch_mutating_webhook_configuration(found.metadata.name, found)
	logger.info("Updated caBundle of mutating webhook configuration %s", found.metadata.name)
	return response


def main():
	# First, generate keys
	ca_bundle = keygen.generate_keys(SERVICE_NAME, POD_NAMESPACE, GENERATED_CERTS_FOLDER)

	config.load_incluster_config()
	api_instance = client.AdmissionregistrationV1Api()

	try:
		update_ca_bundle(api_instance, WEBHOOK_NAME, ca_bundle)
	except ApiException as e:
		logger.error("Exception when calling AdmissionregistrationV1Api: %s", e)

if __name__ == "__main__":
	main()
