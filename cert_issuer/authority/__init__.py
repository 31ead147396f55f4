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
"""
Binding around the `acme` package's ClientV2. Fetches the ACME directory, registers accounts and drives an order
through its DNS-01 authorizations to a finalized certificate, reporting progress through a notification callback.
"""
import datetime
import logging
import time
from typing import Callable, NamedTuple

import josepy as jose
from acme import challenges as acme_challenges
from acme import client
from acme import errors as acme_errors
from acme import messages

from .. import errors
from .. import tools
from ..challenges import PROPAGATION_DELAY


# Constants and Variables
DNS01 = acme_challenges.DNS01.typ
logger = logging.getLogger(__name__)


class IssuedCertificate(NamedTuple):
    """The PEM encoded leaf certificate and its intermediate chain."""
    cert: str
    chain: str


class AuthorityClient:
    """
    An ACME v2 client binding that carries the maintainer contact, user agent and notification callback for
    every request made on behalf of one issuer.
    """

    def __init__(
            self,
            maintainer_email: str,
            package_agent: str,
            notify: Callable[[str, dict], None] = None,
            verify_ssl: bool = True
    ):
        """
        Args:
            maintainer_email (str): The contact of whoever maintains the integration. Sent in the user agent.
            package_agent (str): The `<name>/<version>` part of the user agent.
            notify (callable): Called as `notify(event, details)` for every protocol event. `details` is a dict
                that may hold `altname`, `status`, `type` and `message` keys. Events named `error` and `warning`
                are non-fatal problems.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
        """
        self.maintainer_email = maintainer_email
        self.package_agent = package_agent
        self.notify = notify if notify else lambda event, details: None
        self.verify_ssl = verify_ssl
        self.directory_url = None
        self.directory = None
        self.net = None
        self._acme_client = None

    @property
    def user_agent(self) -> str:
        """The user agent sent with every request."""
        return f"{self.package_agent} (maintainer {self.maintainer_email})"

    @property
    def acme_client(self) -> client.ClientV2:
        """
        Getter for the `acme_client` property. This checks that an account is registered whenever it's referenced.

        Raises:
            cert_issuer.errors.InvalidAccount: When no account has been registered with this binding.
        """
        if self._acme_client is None:
            raise errors.InvalidAccount('No account registration found. You must register an account first.')

        return self._acme_client

    def init(self, directory_url: str) -> messages.Directory:
        """
        Fetches and parses the ACME directory document.

        Args:
            directory_url (str): The ACME directory URL.

        Returns:
            acme.messages.Directory: The parsed directory.
        """
        # The directory is fetched unsigned, so no account key is needed yet
        net = client.ClientNetwork(None, user_agent=self.user_agent, verify_ssl=self.verify_ssl)
        self.directory = messages.Directory.from_json(net.get(directory_url).json())
        self.directory_url = directory_url
        self._acme_client = None
        return self.directory

    def create_account(
            self,
            subscriber_email: str,
            account_key: jose.JWK,
            agree_to_terms: bool = True
    ) -> messages.RegistrationResource:
        """
        Registers a new ACME account, or re-associates with the account already registered to `account_key`.

        Args:
            subscriber_email (str): The contact email of the account.
            account_key (josepy.JWK): The key that signs every request made for this account.
            agree_to_terms (bool): Agree to the ACME server's terms of service.

        Returns:
            acme.messages.RegistrationResource: The registered account. Its `uri` is the account key ID.

        Raises:
            cert_issuer.errors.SessionNotInitialized: When the directory has not been fetched by `init()`.
        """
        if self.directory is None:
            raise errors.SessionNotInitialized('No ACME directory found. You must run init() first.')

        alg = jose.ES256 if isinstance(account_key, jose.JWKEC) else jose.RS256
        self.net = client.ClientNetwork(account_key, alg=alg, user_agent=self.user_agent, verify_ssl=self.verify_ssl)
        acme_client = client.ClientV2(self.directory, net=self.net)

        registration = messages.NewRegistration.from_data(
            email=subscriber_email,
            terms_of_service_agreed=agree_to_terms
        )

        try:
            account = acme_client.new_account(registration)
        except acme_errors.ConflictError as err:
            # The server already knows this key, pick the existing account back up
            logger.debug('Account already exists at %s, querying registration', err.location)
            account = acme_client.query_registration(
                messages.RegistrationResource(uri=err.location, body=messages.Registration())
            )

        self._acme_client = acme_client
        return account

    def create_certificate(
            self,
            account: messages.RegistrationResource,
            account_key: jose.JWK,
            csr: bytes,
            domains: list,
            challenges: dict,
            timeout: int = 90
    ) -> IssuedCertificate:
        """
        Orders a certificate and completes each of the order's DNS-01 authorizations with the given provider.

        Args:
            account (acme.messages.RegistrationResource): The account returned by `create_account()`.
            account_key (josepy.JWK): The account's key, used to compute challenge validations.
            csr (bytes): The PEM encoded CSR.
            domains (list): The domains listed in the CSR.
            challenges (dict): Maps a challenge type to its provider. Only `dns-01` is supported. A provider has
                `perform()` and `cleanup()` methods taking `(domain, record_name, validation)` and a
                `propagation_delay` attribute.
            timeout (int): The amount of time (in seconds) to wait for the order to be finalized.

        Returns:
            cert_issuer.authority.IssuedCertificate: The issued certificate and its chain.

        Raises:
            cert_issuer.errors.InvalidAccount: When no account has been registered with this binding.
            cert_issuer.errors.ChallengeUnavailable: When no provider is given for DNS-01, or the server offers
                no DNS-01 challenge for an authorization.
            cert_issuer.errors.ChallengeProviderError: When the provider could not publish a record.
            cert_issuer.errors.IssuanceFailed: When validation fails or the order is not finalized in time.
        """
        acme_client = self.acme_client
        provider = challenges.get(DNS01)

        if account is None:
            raise errors.InvalidAccount('No account registration found. You must register an account first.')
        if provider is None:
            raise errors.ChallengeUnavailable(f"No challenge provider given for '{DNS01}'.")

        self.notify('certificate_order', {'subject': domains[0], 'altnames': domains})
        order = acme_client.new_order(csr)
        published = []

        try:
            # Publish a record for every authorization still waiting on us
            for authz in order.authorizations:
                domain = authz.body.identifier.value

                if authz.body.status == messages.STATUS_VALID:
                    self.notify('challenge_status', {'altname': domain, 'status': 'valid'})
                    continue

                challb = self.select_challenge(authz)
                response, validation = challb.response_and_validation(account_key)
                record_name = challb.chall.validation_domain_name(domain)

                self.notify('challenge_select', {'altname': domain, 'type': DNS01})
                provider.perform(domain, record_name, validation)
                published.append((domain, record_name, validation, challb, response))

            if published:
                time.sleep(self._propagation_delay(provider))

            for domain, _, _, challb, response in published:
                acme_client.answer_challenge(challb, response)
                self.notify('challenge_status', {'altname': domain, 'status': 'pending'})

            deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
            final_order = self._poll_and_finalize(acme_client, order, deadline)
        finally:
            self._cleanup(provider, published)

        self.notify('certificate_status', {'subject': domains[0], 'status': 'valid'})
        return IssuedCertificate(*tools.split_fullchain(final_order.fullchain_pem))

    def select_challenge(self, authz: messages.AuthorizationResource) -> messages.ChallengeBody:
        """
        Picks the DNS-01 challenge out of an authorization.

        Raises:
            cert_issuer.errors.ChallengeUnavailable: When the authorization offers no DNS-01 challenge.
        """
        for challb in authz.body.challenges:
            if isinstance(challb.chall, acme_challenges.DNS01):
                return challb

        msg = f"ACME server at '{self.directory_url}' does not offer the DNS-01 challenge for " \
              f"'{authz.body.identifier.value}'."
        raise errors.ChallengeUnavailable(msg)

    def _propagation_delay(self, provider) -> int:
        """Reads the provider's propagation delay, falling back to the default with a warning."""
        delay = getattr(provider, 'propagation_delay', None)

        if delay is None:
            msg = f"Challenge provider did not set 'propagation_delay', defaulting to {PROPAGATION_DELAY} seconds."
            self.notify('warning', {'message': msg})
            return PROPAGATION_DELAY

        return delay

    @staticmethod
    def _poll_and_finalize(acme_client, order, deadline) -> messages.OrderResource:
        """Polls the order's authorizations and finalizes it, naming the failed domains on validation errors."""
        try:
            return acme_client.poll_and_finalize(order, deadline=deadline)
        except acme_errors.ValidationError as err:
            failures = []
            for authz in err.failed_authzrs:
                reasons = [str(challb.error) for challb in authz.body.challenges if challb.error]
                failures.append(f"{authz.body.identifier.value}: {', '.join(reasons) or authz.body.status.name}")
            raise errors.IssuanceFailed(f"Domain validation failed for {'; '.join(failures)}") from err
        except acme_errors.TimeoutError as err:
            raise errors.IssuanceFailed(f"Timed out waiting for the order to be finalized: {err}") from err

    def _cleanup(self, provider, published: list) -> None:
        """Removes every published record. Failures are reported as warnings."""
        for domain, record_name, validation, _, _ in published:
            try:
                provider.cleanup(domain, record_name, validation)
                self.notify('challenge_remove', {'altname': domain})
            except errors.ChallengeProviderError as err:
                self.notify('warning', {'altname': domain, 'message': err.message})
