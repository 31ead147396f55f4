# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests the ACME order driving done by cert_issuer.authority."""
import unittest
from unittest import mock

import josepy as jose
from acme import errors as acme_errors
from acme import messages

from cert_issuer import authority
from cert_issuer import errors
from cert_issuer import tools
from cert_issuer.tests import BASE_DOMAIN, TEST_ACCOUNT_URI, TEST_EMAIL
from cert_issuer.tests.tools import make_authorization, make_fullchain

DIRECTORY_JSON = {
    "newNonce": "https://acme.test/new-nonce",
    "newAccount": "https://acme.test/new-account",
    "newOrder": "https://acme.test/new-order",
    "revokeCert": "https://acme.test/revoke-cert",
    "keyChange": "https://acme.test/key-change",
}


class TestAuthorityClientSetup(unittest.TestCase):
    """Checks directory loading and account registration."""

    def setUp(self):
        """Creates a binding with a recording notification callback."""
        self.events = []
        self.authority = authority.AuthorityClient(
            maintainer_email=TEST_EMAIL,
            package_agent="cert_issuer/test",
            notify=lambda event, details: self.events.append((event, details))
        )
        self.account_key = tools.generate_account_key()

    def test_user_agent(self):
        """Checks the maintainer email is included in the user agent."""
        self.assertEqual(self.authority.user_agent, f"cert_issuer/test (maintainer {TEST_EMAIL})")

    @mock.patch("cert_issuer.authority.client.ClientNetwork")
    def test_init_loads_directory(self, network_class):
        """Checks init() fetches and parses the directory document."""
        network_class.return_value.get.return_value.json.return_value = DIRECTORY_JSON

        directory = self.authority.init("https://acme.test/directory")

        network_class.return_value.get.assert_called_once_with("https://acme.test/directory")
        self.assertIsInstance(directory, messages.Directory)
        self.assertEqual(self.authority.directory_url, "https://acme.test/directory")

    @mock.patch("cert_issuer.authority.client.ClientNetwork")
    def test_init_propagates_network_errors(self, network_class):
        """Checks a directory that cannot be reached fails init()."""
        network_class.return_value.get.side_effect = acme_errors.ClientError("unreachable")

        with self.assertRaises(acme_errors.ClientError):
            self.authority.init("https://acme.test/directory")

    def test_create_account_requires_init(self):
        """Checks accounts cannot be created before the directory is loaded."""
        with self.assertRaises(errors.SessionNotInitialized):
            self.authority.create_account(TEST_EMAIL, self.account_key)

    def test_acme_client_requires_account(self):
        """Checks the ACME client cannot be used before an account is registered."""
        with self.assertRaises(errors.InvalidAccount):
            return self.authority.acme_client

    @mock.patch("cert_issuer.authority.client.ClientV2")
    @mock.patch("cert_issuer.authority.client.ClientNetwork")
    def test_create_account(self, network_class, client_class):
        """Checks accounts are registered with the EC key and the terms of service agreed to."""
        self.authority.directory = mock.sentinel.directory
        registration = messages.RegistrationResource(uri=TEST_ACCOUNT_URI, body=messages.Registration())
        client_class.return_value.new_account.return_value = registration

        self.assertIs(self.authority.create_account(TEST_EMAIL, self.account_key), registration)

        network_class.assert_called_once_with(
            self.account_key,
            alg=jose.ES256,
            user_agent=self.authority.user_agent,
            verify_ssl=True
        )
        client_class.assert_called_once_with(mock.sentinel.directory, net=network_class.return_value)
        new_registration = client_class.return_value.new_account.call_args[0][0]
        self.assertTrue(new_registration.terms_of_service_agreed)
        self.assertEqual(new_registration.emails, (TEST_EMAIL,))
        self.assertIs(self.authority.acme_client, client_class.return_value)

    @mock.patch("cert_issuer.authority.client.ClientV2")
    @mock.patch("cert_issuer.authority.client.ClientNetwork")
    def test_create_account_existing_key(self, _, client_class):
        """Checks a key that is already registered is re-associated with its account."""
        self.authority.directory = mock.sentinel.directory
        client_class.return_value.new_account.side_effect = acme_errors.ConflictError(TEST_ACCOUNT_URI)
        client_class.return_value.query_registration.return_value = mock.sentinel.existing

        self.assertIs(self.authority.create_account(TEST_EMAIL, self.account_key), mock.sentinel.existing)
        queried = client_class.return_value.query_registration.call_args[0][0]
        self.assertEqual(queried.uri, TEST_ACCOUNT_URI)


class TestAuthorityClientCertificates(unittest.TestCase):
    """Checks orders are driven through their DNS-01 authorizations."""

    def setUp(self):
        """Creates a binding with a mock ACME client, a mock provider and a real account key."""
        self.events = []
        self.authority = authority.AuthorityClient(
            maintainer_email=TEST_EMAIL,
            package_agent="cert_issuer/test",
            notify=lambda event, details: self.events.append((event, details))
        )
        self.acme_client = mock.MagicMock()
        self.authority._acme_client = self.acme_client    # pylint: disable=protected-access
        self.account_key = tools.generate_account_key()
        self.provider = mock.MagicMock(propagation_delay=7)
        self.fullchain, self.leaf, self.intermediate = make_fullchain(BASE_DOMAIN)
        self.acme_client.poll_and_finalize.return_value = mock.MagicMock(fullchain_pem=self.fullchain)

        sleep_patcher = mock.patch("cert_issuer.authority.time.sleep")
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def create_certificate(self, authorizations, challenges=None):
        """Runs create_certificate() against an order holding `authorizations`."""
        self.acme_client.new_order.return_value = mock.MagicMock(authorizations=authorizations)
        return self.authority.create_certificate(
            account=mock.sentinel.account,
            account_key=self.account_key,
            csr=b"-----BEGIN CERTIFICATE REQUEST-----",
            domains=[BASE_DOMAIN, f"*.{BASE_DOMAIN}"],
            challenges={authority.DNS01: self.provider} if challenges is None else challenges
        )

    def test_create_certificate(self):
        """Checks each authorization is published, answered and cleaned up and the chain is split."""
        authorizations = [make_authorization(BASE_DOMAIN), make_authorization(f"www.{BASE_DOMAIN}")]

        issued = self.create_certificate(authorizations)

        self.assertEqual(issued, authority.IssuedCertificate(self.leaf, self.intermediate))
        self.acme_client.new_order.assert_called_once_with(b"-----BEGIN CERTIFICATE REQUEST-----")

        # Records are published under the _acme-challenge label with the challenge validation
        for authz, call in zip(authorizations, self.provider.perform.call_args_list):
            domain = authz.body.identifier.value
            validation = authz.body.challenges[0].chall.validation(self.account_key)
            self.assertEqual(call, mock.call(domain, f"_acme-challenge.{domain}", validation))
        self.assertEqual(self.provider.perform.call_count, 2)

        # The propagation delay is waited once, before any challenge is answered
        self.sleep.assert_called_once_with(7)
        self.assertEqual(self.acme_client.answer_challenge.call_count, 2)
        self.assertEqual(self.provider.cleanup.call_args_list, [
            mock.call(*call[0]) for call in self.provider.perform.call_args_list
        ])

        events = [event for event, _ in self.events]
        self.assertEqual(events[0], 'certificate_order')
        self.assertEqual(events[-1], 'certificate_status')
        self.assertIn('challenge_select', events)
        self.assertNotIn('warning', events)

    def test_create_certificate_skips_valid_authorizations(self):
        """Checks authorizations the server already considers valid are not published again."""
        authorizations = [make_authorization(BASE_DOMAIN, status=messages.STATUS_VALID)]

        self.create_certificate(authorizations)

        self.provider.perform.assert_not_called()
        self.sleep.assert_not_called()
        self.assertIn(('challenge_status', {'altname': BASE_DOMAIN, 'status': 'valid'}), self.events)

    def test_create_certificate_requires_dns01_provider(self):
        """Checks a DNS-01 provider must be given."""
        with self.assertRaises(errors.ChallengeUnavailable):
            self.create_certificate([make_authorization(BASE_DOMAIN)], challenges={})
        self.acme_client.new_order.assert_not_called()

    def test_create_certificate_without_dns01_challenge(self):
        """Checks an error is raised and earlier records are removed when the server offers no DNS-01 challenge."""
        authorizations = [make_authorization(BASE_DOMAIN), make_authorization(f"www.{BASE_DOMAIN}", offer_dns01=False)]

        with self.assertRaises(errors.ChallengeUnavailable):
            self.create_certificate(authorizations)

        self.assertEqual(self.provider.perform.call_count, 1)
        self.assertEqual(self.provider.cleanup.call_count, 1)
        self.acme_client.poll_and_finalize.assert_not_called()

    def test_create_certificate_provider_failure(self):
        """Checks provider failures propagate after cleaning up the records already published."""
        self.provider.perform.side_effect = [None, errors.ChallengeProviderError("Unable to authenticate you")]
        authorizations = [make_authorization(BASE_DOMAIN), make_authorization(f"www.{BASE_DOMAIN}")]

        with self.assertRaises(errors.ChallengeProviderError):
            self.create_certificate(authorizations)

        self.assertEqual(self.provider.cleanup.call_count, 1)
        self.acme_client.answer_challenge.assert_not_called()

    def test_create_certificate_validation_failure(self):
        """Checks validation failures name the failed domains."""
        authz = make_authorization(BASE_DOMAIN)
        authz.body.challenges[0].error = "urn:ietf:params:acme:error:unauthorized"
        self.acme_client.poll_and_finalize.side_effect = acme_errors.ValidationError([authz])

        with self.assertRaises(errors.IssuanceFailed) as context:
            self.create_certificate([authz])

        self.assertIn(BASE_DOMAIN, context.exception.message)
        self.assertIn("unauthorized", context.exception.message)
        self.provider.cleanup.assert_called_once()

    def test_create_certificate_timeout(self):
        """Checks orders that are not finalized in time raise IssuanceFailed."""
        self.acme_client.poll_and_finalize.side_effect = acme_errors.TimeoutError()

        with self.assertRaises(errors.IssuanceFailed):
            self.create_certificate([make_authorization(BASE_DOMAIN)])

    def test_create_certificate_cleanup_failure_is_a_warning(self):
        """Checks records that cannot be removed are reported without failing the issuance."""
        self.provider.cleanup.side_effect = errors.ChallengeProviderError("Error deleting TXT record 1")

        issued = self.create_certificate([make_authorization(BASE_DOMAIN)])

        self.assertEqual(issued.cert, self.leaf)
        self.assertIn(
            ('warning', {'altname': BASE_DOMAIN, 'message': "Error deleting TXT record 1"}),
            self.events
        )

    def test_create_certificate_default_propagation_delay(self):
        """Checks providers without a propagation delay get the default and a warning."""
        self.provider = mock.MagicMock(spec=['perform', 'cleanup'])

        self.create_certificate([make_authorization(BASE_DOMAIN)])

        self.sleep.assert_called_once_with(authority.PROPAGATION_DELAY)
        self.assertEqual([event for event, _ in self.events].count('warning'), 1)


if __name__ == "__main__":
    unittest.main()
