"""Unit tests and testing tools for the cert_issuer package."""

BASE_DOMAIN = "example.com"
TEST_DOMAINS = [BASE_DOMAIN, f"*.{BASE_DOMAIN}"]
TEST_EMAIL = f"cert-issuer@{BASE_DOMAIN}"
TEST_TOKEN = "dop_v1_test-token"
TEST_ACCOUNT_URI = "https://acme-staging-v02.api.letsencrypt.org/acme/acct/123456"
