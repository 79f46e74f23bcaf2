# SPDX-License-Identifier: MIT

"""Identity and webhook TLS checks.

The linkerd-identity category loads the issuer credential and the trust
anchors into the discovery context; the webhook category verifies each
webhook-serving certificate against the CA bundle published for it.
"""

from __future__ import annotations

import base64
import binascii
import logging

from cryptography import x509

from mesh_health.config import (
    CERT_KEY_NAME,
    CERT_OLD_KEY_NAME,
    KEY_KEY_NAME,
    KEY_OLD_KEY_NAME,
    PROXY_INJECTOR_OLD_TLS_SECRET_NAME,
    PROXY_INJECTOR_TLS_SECRET_NAME,
    PROXY_INJECTOR_WEBHOOK_CONFIG_NAME,
    SP_VALIDATOR_OLD_TLS_SECRET_NAME,
    SP_VALIDATOR_TLS_SECRET_NAME,
    SP_VALIDATOR_WEBHOOK_CONFIG_NAME,
    TAP_API_SERVICE_NAME,
    TAP_OLD_TLS_SECRET_NAME,
    TAP_TLS_SECRET_NAME,
)
from mesh_health.control_plane import check_api_service_available
from mesh_health.errors import MeshHealthError, is_not_found
from mesh_health.healthcheck import IDENTITY_CHECKS, WEBHOOKS_AND_APISVC_TLS_CHECKS
from mesh_health.issuercerts import (
    check_expiring_soon,
    check_issuer_algorithm,
    check_trust_anchor_algorithm,
    check_validity_period,
    collect_certificate_errors,
    fetch_issuer_cert_data,
)
from mesh_health.models import Category, new_checker
from mesh_health.tls import Cred, decode_pem_certificates, validate_and_create_creds

logger = logging.getLogger(__name__)


# =====================================================================
# Credential lookup
# =====================================================================

def _creds_from_secret(kube_api, namespace: str, secret_name: str, crt_key: str, key_key: str) -> Cred:
    data = kube_api.get_secret_data(namespace, secret_name)
    for key in (crt_key, key_key):
        if key not in data:
            raise MeshHealthError(f"key {key} needs to exist in secret {secret_name}")
    return validate_and_create_creds(data[crt_key], data[key_key])


def fetch_creds(kube_api, namespace: str, secret_name: str, old_secret_name: str) -> Cred:
    """Load TLS creds from ``secret_name``, falling back to the legacy secret layout."""
    try:
        return _creds_from_secret(kube_api, namespace, secret_name, CERT_KEY_NAME, KEY_KEY_NAME)
    except Exception as exc:
        if not is_not_found(exc):
            raise
    logger.debug("Secret %s/%s not found, trying %s", namespace, secret_name, old_secret_name)
    return _creds_from_secret(kube_api, namespace, old_secret_name, CERT_OLD_KEY_NAME, KEY_OLD_KEY_NAME)


def _decode_ca_bundle(ca_bundle: str | bytes | None) -> list[x509.Certificate]:
    """CA bundles arrive base64 encoded from the API; raw PEM is accepted too."""
    if not ca_bundle:
        raise MeshHealthError("CA bundle is empty")
    raw = ca_bundle.encode() if isinstance(ca_bundle, str) else ca_bundle
    if not raw.lstrip().startswith(b"-----BEGIN"):
        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MeshHealthError(f"failed to decode CA bundle: {exc}") from exc
    return decode_pem_certificates(raw)


def _single_webhook(config) -> object:
    webhooks = config.webhooks or []
    if len(webhooks) != 1:
        raise MeshHealthError(f"expected 1 webhooks, found {len(webhooks)}")
    return webhooks[0]


def fetch_proxy_injector_ca_bundle(kube_api) -> list[x509.Certificate]:
    config = kube_api.get_mutating_webhook_configuration(PROXY_INJECTOR_WEBHOOK_CONFIG_NAME)
    return _decode_ca_bundle(_single_webhook(config).client_config.ca_bundle)


def fetch_webhook_ca_bundle(kube_api, name: str) -> list[x509.Certificate]:
    config = kube_api.get_validating_webhook_configuration(name)
    return _decode_ca_bundle(_single_webhook(config).client_config.ca_bundle)


def fetch_api_service_ca_bundle(kube_api, name: str) -> list[x509.Certificate]:
    api_service = kube_api.get_api_service(name)
    return _decode_ca_bundle(api_service.spec.ca_bundle)


# =====================================================================
# Composite certificate checks
# =====================================================================

def check_cert_and_anchors(cert: Cred, anchors: list[x509.Certificate], identity_name: str) -> None:
    expired = collect_certificate_errors(anchors, check_validity_period)
    if expired:
        raise MeshHealthError("anchors not within their validity period:\n\t" + "\n\t".join(expired))
    try:
        check_validity_period(cert.certificate)
    except MeshHealthError as exc:
        raise MeshHealthError(f"certificate is {exc}") from exc
    try:
        cert.verify(anchors, identity_name)
    except MeshHealthError as exc:
        raise MeshHealthError(f"cert is not issued by the trust anchor: {exc}") from exc


def check_cert_and_anchors_expiring_soon(cert: Cred) -> None:
    expiring = collect_certificate_errors(cert.trust_chain, check_expiring_soon)
    if expiring:
        raise MeshHealthError("Anchors expiring soon:\n\t" + "\n\t".join(expiring))
    try:
        check_expiring_soon(cert.certificate)
    except MeshHealthError as exc:
        raise MeshHealthError(f"certificate {exc}") from exc


def check_certificates_config(kube_api, namespace: str, values) -> tuple[Cred, list[x509.Certificate]]:
    if values is None:
        raise MeshHealthError("control plane configuration has not been loaded")
    data = fetch_issuer_cert_data(kube_api, namespace, values)
    issuer = validate_and_create_creds(data.issuer_crt, data.issuer_key)
    anchors = decode_pem_certificates(data.trust_anchors)
    return issuer, anchors


# =====================================================================
# Categories
# =====================================================================

def categories(hc) -> list[Category]:
    ns = hc.options.control_plane_namespace
    ident = hc.context.identity

    def certificate_config():
        ident.issuer_cred, ident.trust_anchors = check_certificates_config(
            hc.kube_api, ns, hc.context.cluster.values,
        )

    def anchors_check(check, header: str):
        def body():
            problems = collect_certificate_errors(ident.trust_anchors, check)
            if problems:
                raise MeshHealthError(f"{header}:\n\t" + "\n\t".join(problems))
        return body

    def issuer_check(check, prefix: str):
        def body():
            if ident.issuer_cred is None:
                raise MeshHealthError("issuer certificate has not been loaded")
            try:
                check(ident.issuer_cred.certificate)
            except MeshHealthError as exc:
                raise MeshHealthError(f"{prefix} {exc}") from exc
        return body

    def issued_by_anchors():
        if ident.issuer_cred is None:
            raise MeshHealthError("issuer certificate has not been loaded")
        ident.issuer_cred.verify(ident.trust_anchors)

    def webhook_cert_valid(fetch_bundle, secret_name: str, old_secret_name: str, service: str):
        def body():
            anchors = fetch_bundle()
            cert = fetch_creds(hc.kube_api, ns, secret_name, old_secret_name)
            check_cert_and_anchors(cert, anchors, f"{service}.{ns}.svc")
        return body

    def webhook_cert_expiry(secret_name: str, old_secret_name: str):
        def body():
            check_cert_and_anchors_expiring_soon(fetch_creds(hc.kube_api, ns, secret_name, old_secret_name))
        return body

    return [
        Category(IDENTITY_CHECKS).with_checks(
            new_checker("certificate config is valid").with_hint_anchor("l5d-identity-cert-config-valid")
            .as_fatal().with_check(certificate_config),
            new_checker("trust anchors are using supported crypto algorithm")
            .with_hint_anchor("l5d-identity-trustAnchors-use-supported-crypto").as_fatal()
            .with_check(anchors_check(check_trust_anchor_algorithm, "Invalid trustAnchors")),
            new_checker("trust anchors are within their validity period")
            .with_hint_anchor("l5d-identity-trustAnchors-are-time-valid").as_fatal()
            .with_check(anchors_check(check_validity_period, "Invalid anchors")),
            new_checker("trust anchors are valid for at least 60 days")
            .with_hint_anchor("l5d-identity-trustAnchors-not-expiring-soon").as_warning()
            .with_check(anchors_check(check_expiring_soon, "Anchors expiring soon")),
            new_checker("issuer cert is using supported crypto algorithm")
            .with_hint_anchor("l5d-identity-issuer-cert-uses-supported-crypto").as_fatal()
            .with_check(issuer_check(check_issuer_algorithm, "issuer certificate")),
            new_checker("issuer cert is within its validity period")
            .with_hint_anchor("l5d-identity-issuer-cert-is-time-valid").as_fatal()
            .with_check(issuer_check(check_validity_period, "issuer certificate is")),
            new_checker("issuer cert is valid for at least 60 days")
            .with_hint_anchor("l5d-identity-issuer-cert-not-expiring-soon").as_warning()
            .with_check(issuer_check(check_expiring_soon, "issuer certificate")),
            new_checker("issuer cert is issued by the trust anchor")
            .with_hint_anchor("l5d-identity-issuer-cert-issued-by-trust-anchor")
            .with_check(issued_by_anchors),
        ),
        Category(WEBHOOKS_AND_APISVC_TLS_CHECKS).with_checks(
            new_checker("proxy-injector webhook has valid cert")
            .with_hint_anchor("l5d-proxy-injector-webhook-cert-valid").as_fatal()
            .with_check(webhook_cert_valid(
                lambda: fetch_proxy_injector_ca_bundle(hc.kube_api),
                PROXY_INJECTOR_TLS_SECRET_NAME, PROXY_INJECTOR_OLD_TLS_SECRET_NAME, "linkerd-proxy-injector",
            )),
            new_checker("proxy-injector cert is valid for at least 60 days")
            .with_hint_anchor("l5d-proxy-injector-webhook-cert-not-expiring-soon").as_warning()
            .with_check(webhook_cert_expiry(PROXY_INJECTOR_TLS_SECRET_NAME, PROXY_INJECTOR_OLD_TLS_SECRET_NAME)),
            new_checker("sp-validator webhook has valid cert")
            .with_hint_anchor("l5d-sp-validator-webhook-cert-valid").as_fatal()
            .with_check(webhook_cert_valid(
                lambda: fetch_webhook_ca_bundle(hc.kube_api, SP_VALIDATOR_WEBHOOK_CONFIG_NAME),
                SP_VALIDATOR_TLS_SECRET_NAME, SP_VALIDATOR_OLD_TLS_SECRET_NAME, "linkerd-sp-validator",
            )),
            new_checker("sp-validator cert is valid for at least 60 days")
            .with_hint_anchor("l5d-sp-validator-webhook-cert-not-expiring-soon").as_warning()
            .with_check(webhook_cert_expiry(SP_VALIDATOR_TLS_SECRET_NAME, SP_VALIDATOR_OLD_TLS_SECRET_NAME)),
            new_checker("tap API server has valid cert")
            .with_hint_anchor("l5d-tap-cert-valid").as_fatal()
            .with_check(webhook_cert_valid(
                lambda: fetch_api_service_ca_bundle(hc.kube_api, TAP_API_SERVICE_NAME),
                TAP_TLS_SECRET_NAME, TAP_OLD_TLS_SECRET_NAME, "linkerd-tap",
            )),
            new_checker("tap API server cert is valid for at least 60 days")
            .with_hint_anchor("l5d-tap-cert-not-expiring-soon").as_warning()
            .with_check(webhook_cert_expiry(TAP_TLS_SECRET_NAME, TAP_OLD_TLS_SECRET_NAME)),
            new_checker("tap API service is running").with_hint_anchor("l5d-tap-api")
            .with_retry_deadline(hc.options.retry_deadline)
            .with_check(lambda: check_api_service_available(hc.kube_api.get_api_service(TAP_API_SERVICE_NAME))),
        ),
    ]
