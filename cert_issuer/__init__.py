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
cert_issuer obtains a certificate from an ACME certificate authority (Let's Encrypt by default) using the DNS-01
challenge, publishing the challenge records through the DigitalOcean Domains API. It registers a fresh account, proves
control of every requested domain and saves the server key and certificate chain as `privkey.pem` and `fullchain.pem`.
"""
import logging
import os
import pathlib
import tempfile

import josepy as jose
import requests
import validators
from acme import errors as acme_errors

from . import authority
from . import challenges
from . import errors
from . import tools


# Constants and Variables
__version__ = '1.0.0'
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
PACKAGE_AGENT = f"cert_issuer/{__version__}"
DIRECTORY_URL = {
    'prod': 'https://acme-v02.api.letsencrypt.org/directory',
    'test': 'https://acme-staging-v02.api.letsencrypt.org/directory'
}
PRIVKEY_FILE = 'privkey.pem'
FULLCHAIN_FILE = 'fullchain.pem'
HELP_TEXT = """Help
    1. Create the object: issuer = cert_issuer.CertificateIssuer(token, domains, maintainer_email, subscriber_email)
    2. Call issuer.init()
    3. Call issuer.account()
    4. Call issuer.create_certificate()

    If you want to change where fullchain.pem and privkey.pem are saved, call issuer.set_save_path() with the
    ABSOLUTE path before calling create_certificate()"""


class CertificateIssuer:
    """
    Issues a certificate for a set of domains through an ACME server, answering DNS-01 challenges via DigitalOcean.
    """
    # pylint: disable=too-many-instance-attributes,too-many-arguments

    def __init__(
            self,
            token: str,
            domains: list,
            maintainer_email: str,
            subscriber_email: str,
            staging: bool = False,
            log=None,
            directory: str = None,
            propagation_delay: int = challenges.PROPAGATION_DELAY,
            verify_ssl: bool = True
    ):
        """
        Args:
            token (str): The DigitalOcean API token used to publish the challenge records.
            domains (list): The domains the certificate applies to. Wildcards (`*.example.com`) are allowed.
            maintainer_email (str): The email of whoever maintains this integration, typically the developer.
            subscriber_email (str): The email the ACME account is registered with, typically the client.
            staging (bool): Use the ACME staging server instead of production.
            log: The logger to use. Must support `.info()` and `.warning()`. Defaults to the `cert_issuer` logger.
            directory (str): An ACME directory URL to use instead of the one picked by `staging`.
            propagation_delay (int): The amount of time (in seconds) to wait for DNS records to propagate.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.

        Raises:
            cert_issuer.errors.InvalidToken: When `token` is empty.
            cert_issuer.errors.InvalidDomain: When `domains` is empty or holds an invalid domain name.
            cert_issuer.errors.InvalidEmail: When either email address is missing or invalid.

        Examples:
            >>> import cert_issuer
            >>> issuer = cert_issuer.CertificateIssuer(
            ...     token="dop_v1_...",
            ...     domains=["example.com", "*.example.com"],
            ...     maintainer_email="developer@example.com",
            ...     subscriber_email="client@example.com",
            ...     staging=True
            ... )
        """
        if not token or not isinstance(token, str):
            raise errors.InvalidToken('A DigitalOcean API token is required.')

        self.log = log if log else logging.getLogger(__name__)
        self.errors = []
        self.domains = domains
        self.maintainer_email = maintainer_email
        self.subscriber_email = subscriber_email
        self.staging = staging
        self.directory = directory if directory else DIRECTORY_URL['test' if staging else 'prod']
        self.save_path = None
        self.account_key = None
        self.server_key = None
        self.registration = None
        self._reported = 0

        # Create the DigitalOcean challenge provider
        self.challenge = challenges.DigitalOceanDNS01(
            token,
            base_url=challenges.DO_BASE_URL,
            propagation_delay=propagation_delay
        )

        # Create the ACME client binding
        self.acme = authority.AuthorityClient(
            maintainer_email=self.maintainer_email,
            package_agent=PACKAGE_AGENT,
            notify=self._notify,
            verify_ssl=verify_ssl
        )

    def init(self) -> None:
        """
        Fetches the ACME directory and generates a fresh EC account key and RSA server key. Starting over with
        `init()` discards any previously registered account, keys and collected warnings.

        Examples:
            >>> issuer.init()
        """
        self.errors = []
        self._reported = 0
        self.registration = None

        self.acme.init(self.directory)

        # Create account & server private key
        self.account_key = tools.generate_account_key()
        self.server_key = tools.generate_server_key()

        self.log.info('ACME client and private keys successfully initialized')

    def account(self):
        """
        Registers a new ACME account for `subscriber_email`. By running this method, you are agreeing to the ACME
        server's terms of service.

        Returns:
            acme.messages.RegistrationResource: The registered account. This method will update the `registration`
                attribute with the same value.

        Raises:
            cert_issuer.errors.SessionNotInitialized: When `init()` has not been run.

        Examples:
            >>> issuer.account().uri
            'https://acme-staging-v02.api.letsencrypt.org/acme/acct/123456'
        """
        if self.account_key is None:
            raise errors.SessionNotInitialized('No account key found. You must run init() first.')

        self.log.info('Registering new ACME account...')

        self.registration = self.acme.create_account(
            subscriber_email=self.subscriber_email,
            account_key=self.account_key,
            agree_to_terms=True
        )

        self.log.info('ACME account registered with ID: %s', self.registration.uri)
        return self.registration

    def create_certificate(self) -> None:
        """
        Validates every domain with the DNS-01 challenge, requests the certificate and saves `privkey.pem` and
        `fullchain.pem` to the save path. Any warnings or errors reported by the ACME flow are logged at the end.

        Raises:
            cert_issuer.errors.InvalidAccount: When `account()` has not been run.
            cert_issuer.errors.CSRBuildFailed: When the CSR could not be built.
            cert_issuer.errors.IssuanceFailed: When the ACME server or DNS provider failed to issue the certificate.
            cert_issuer.errors.PersistenceFailed: When the key or certificate could not be written.

        Examples:
            >>> issuer.create_certificate()
        """
        if self.registration is None:
            raise errors.InvalidAccount('No account registration found. You must run account() first.')

        self.log.info('Validating domain authorization for: %s', ', '.join(self.domains))

        try:
            csr = self._build_csr()
            issued = self._issue(csr)

            self._save([
                (PRIVKEY_FILE, tools.export_private_key(self.server_key), 0o600),
                (FULLCHAIN_FILE, tools.format_fullchain(issued.cert, issued.chain), 0o644)
            ])
        finally:
            self._report_errors()

    def set_save_path(self, path: str) -> None:
        """
        Sets the directory `privkey.pem` and `fullchain.pem` are saved to. Defaults to the current working directory.

        Args:
            path (str): The directory path. It is not checked until the files are written.

        Examples:
            >>> issuer.set_save_path("/etc/ssl/example.com")
        """
        self.save_path = path
        self.log.info('Set save path to: %s', path)

    def show_help(self) -> None:
        """Logs the order in which the issuer's methods must be called."""
        self.log.info(HELP_TEXT)

    def _build_csr(self) -> bytes:
        """Builds the CSR from the server key and all domains."""
        if self.server_key is None:
            raise errors.SessionNotInitialized('No server key found. You must run init() first.')

        try:
            return tools.make_csr(self.server_key, self.domains)
        except ValueError as err:
            raise errors.CSRBuildFailed(f"Unable to build CSR for {self.domains}: {err}") from err

    def _issue(self, csr: bytes) -> authority.IssuedCertificate:
        """Runs the ACME order, turning library failures into IssuanceFailed."""
        try:
            return self.acme.create_certificate(
                account=self.registration,
                account_key=self.account_key,
                csr=csr,
                domains=self.domains,
                challenges={authority.DNS01: self.challenge}
            )
        except errors.IssuanceFailed:
            raise
        except (acme_errors.Error, jose.Error, requests.exceptions.RequestException, ValueError) as err:
            raise errors.IssuanceFailed(f"Certificate issuance failed: {err}") from err

    def _save(self, files: list) -> None:
        """
        Writes each `(name, data, mode)` file into the save path. All files are written to temporary files first and
        only moved into place once every one of them was written.
        """
        save_path = pathlib.Path(self.save_path if self.save_path else '.')
        staged = []

        try:
            for name, data, mode in files:
                handle, tmp_path = tempfile.mkstemp(prefix=f".{name}.", dir=save_path)
                staged.append((tmp_path, save_path.joinpath(name)))
                with os.fdopen(handle, 'w', encoding='ascii') as tmp_file:
                    tmp_file.write(data)
                os.chmod(tmp_path, mode)

            for tmp_path, target in staged:
                os.replace(tmp_path, target)
                self.log.info('Saved %s', target.name)
        except OSError as err:
            for tmp_path, _ in staged:
                pathlib.Path(tmp_path).unlink(missing_ok=True)
            raise errors.PersistenceFailed(f"Unable to save certificate files to '{save_path}': {err}") from err

    def _notify(self, event: str, details: dict) -> None:
        """Collects ACME errors and warnings for the final report and logs every other event."""
        if event in ('error', 'warning'):
            self.errors.append(f"{event.upper()}: {details.get('message', '')}")
        else:
            self.log.info('%s: %s %s', event, details.get('altname', ''), details.get('status', ''))

    def _report_errors(self) -> None:
        """Logs the warnings and errors collected since the last report as one block."""
        pending = self.errors[self._reported:]
        self._reported = len(self.errors)

        if pending:
            self.log.warning('The following warnings and/or errors were encountered:')
            self.log.warning('\n'.join(pending))

    @staticmethod
    def strip_wildcard(domain: str) -> str:
        """
        Strips the wildcard portion of a domain (*.) if present.

        Args:
            domain (str): The domain string to strip wildcards from.

        Returns:
            str: The domain string without the wildcard portion.
        """
        return domain[2:] if domain.startswith("*.") else domain

    @property
    def domains(self) -> list:
        """
        Getter for the `domains` property.

        Returns:
            list: A list of domain names currently set.
        """
        return self._domains

    @domains.setter
    def domains(self, value) -> None:
        """
        Setter for the `domains` property. This checks that the assigned domains value is a non-empty list of valid
        FQDNs.

        Raises:
            cert_issuer.errors.InvalidDomain: When the list is empty or one or more domains are invalid.
        """
        # Ensure set value is a list
        if not isinstance(value, list):
            raise errors.InvalidDomain("Domains must be of type 'list'.")
        if not value:
            raise errors.InvalidDomain('No domains found. At least one domain is required.')

        # Ensure each domain within the list is an RFC2181 compliant hostname
        for domain in value:
            if not isinstance(domain, str) or not validators.domain(self.strip_wildcard(domain)):
                raise errors.InvalidDomain(f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181.")

        self._domains = list(value)

    @property
    def maintainer_email(self) -> str:
        """Getter for the `maintainer_email` property."""
        return self._maintainer_email

    @maintainer_email.setter
    def maintainer_email(self, value: str) -> None:
        """
        Setter for the `maintainer_email` property. This ensures an email address is valid before setting.

        Raises:
            cert_issuer.errors.InvalidEmail: When the `value` is not a valid email address
        """
        self._maintainer_email = self._validate_email(value, 'maintainer_email')

    @property
    def subscriber_email(self) -> str:
        """Getter for the `subscriber_email` property."""
        return self._subscriber_email

    @subscriber_email.setter
    def subscriber_email(self, value: str) -> None:
        """
        Setter for the `subscriber_email` property. This ensures an email address is valid before setting.

        Raises:
            cert_issuer.errors.InvalidEmail: When the `value` is not a valid email address
        """
        self._subscriber_email = self._validate_email(value, 'subscriber_email')

    @staticmethod
    def _validate_email(value: str, name: str) -> str:
        if not value:
            raise errors.InvalidEmail(f"No {name} found. An email address is required.")
        if not validators.email(value):
            raise errors.InvalidEmail(f"Value '{value}' for {name} is not a valid email address.")

        return value
