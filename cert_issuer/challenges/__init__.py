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
"""DNS-01 challenge providers that publish verification tokens as TXT records."""
import logging

import digitalocean
import dns.name
import requests

from .. import errors


# Constants and Variables
DO_BASE_URL = "https://api.digitalocean.com/v2/"
PROPAGATION_DELAY = 5    # Seconds to wait after publishing records before asking for validation
RECORD_TTL = 30
# python-digitalocean does not wrap network failures
API_ERRORS = (digitalocean.Error, requests.exceptions.RequestException)
logger = logging.getLogger(__name__)


class DigitalOceanDNS01:
    """
    Publishes and removes DNS-01 TXT records using the DigitalOcean Domains API.
    """

    def __init__(
            self,
            token: str,
            base_url: str = DO_BASE_URL,
            propagation_delay: int = PROPAGATION_DELAY,
            ttl: int = RECORD_TTL
    ) -> None:
        """
        Args:
            token (str): The DigitalOcean API token. It must be allowed to read and write domain records.
            base_url (str): The DigitalOcean API endpoint. Typically, this will never change.
            propagation_delay (int): The amount of time (in seconds) to wait after publishing records before
                the ACME server is asked to validate them.
            ttl (int): The TTL of the TXT records created.
        """
        self.propagation_delay = propagation_delay
        self.ttl = ttl
        self.manager = digitalocean.Manager(token=token, end_point=base_url)

    def perform(self, domain_name: str, record_name: str, record_content: str) -> int:
        """
        Adds the TXT record that answers the challenge for one domain.

        Args:
            domain_name (str): The domain being validated (without the wildcard).
            record_name (str): The full record name, typically `_acme-challenge.<domain_name>`.
            record_content (str): The challenge validation value.

        Returns:
            int: The DigitalOcean ID of the new record.

        Raises:
            cert_issuer.errors.ChallengeProviderError: When the zone cannot be found or the record cannot be created.
        """
        try:
            domain = self._find_domain(domain_name)
        except API_ERRORS as err:
            hint = ' (Did you provide a valid API token?)' if str(err).startswith("Unable to authenticate") else ''
            logger.debug('Error finding domain using the DigitalOcean API: %s', err)
            raise errors.ChallengeProviderError(
                f"Error finding domain using the DigitalOcean API: {err}{hint}"
            ) from err

        try:
            result = domain.create_new_domain_record(
                type='TXT',
                name=self.compute_record_name(domain.name, record_name),
                data=record_content,
                ttl=self.ttl
            )
        except API_ERRORS as err:
            logger.debug('Error adding TXT record using the DigitalOcean API: %s', err)
            raise errors.ChallengeProviderError(f"Error adding TXT record using the DigitalOcean API: {err}") from err

        record_id = result['domain_record']['id']
        logger.debug('Successfully added TXT record with id: %d', record_id)
        return record_id

    def cleanup(self, domain_name: str, record_name: str, record_content: str) -> None:
        """
        Removes the TXT records matching both the name and content of a published challenge. Matching on content
        keeps records created by other concurrent validations of the same name intact.

        Args:
            domain_name (str): The domain being validated (without the wildcard).
            record_name (str): The full record name, typically `_acme-challenge.<domain_name>`.
            record_content (str): The challenge validation value.

        Raises:
            cert_issuer.errors.ChallengeProviderError: When the zone, its records or a matching record cannot be read
                or removed.
        """
        try:
            domain = self._find_domain(domain_name)
            name = self.compute_record_name(domain.name, record_name)
            matching_records = [
                record for record in domain.get_records()
                if record.type == 'TXT' and record.name == name and record.data == record_content
            ]
        except API_ERRORS as err:
            logger.debug('Error getting DNS records using the DigitalOcean API: %s', err)
            raise errors.ChallengeProviderError(
                f"Error getting DNS records for '{record_name}' using the DigitalOcean API: {err}"
            ) from err

        for record in matching_records:
            try:
                logger.debug('Removing TXT record with id: %s', record.id)
                record.destroy()
            except API_ERRORS as err:
                raise errors.ChallengeProviderError(
                    f"Error deleting TXT record {record.id} using the DigitalOcean API: {err}"
                ) from err

    def _find_domain(self, domain_name: str) -> digitalocean.Domain:
        """
        Finds the DigitalOcean zone holding a domain name.

        Raises:
            cert_issuer.errors.ChallengeProviderError: When none of the account's zones contain the domain.
        """
        guesses = self.base_domain_name_guesses(domain_name)
        domains = self.manager.get_all_domains()

        # Prefer the longest (most specific) zone name
        for guess in guesses:
            matches = [domain for domain in domains if domain.name == guess]
            if matches:
                logger.debug('Found base domain for %s using name %s', domain_name, guess)
                return matches[0]

        raise errors.ChallengeProviderError(
            f"Unable to determine base domain for {domain_name} using names: {guesses}."
        )

    @staticmethod
    def base_domain_name_guesses(domain_name: str) -> list:
        """
        Lists the candidate zone names for a domain, from the name itself down to its top level domain.

        Args:
            domain_name (str): The domain to list candidates for.

        Returns:
            list: Candidate zone names, e.g. `['a.example.com', 'example.com', 'com']`.

        Examples:
            >>> DigitalOceanDNS01.base_domain_name_guesses("www.example.com")
            ['www.example.com', 'example.com', 'com']
        """
        guesses = []
        name = dns.name.from_text(domain_name)

        while name != dns.name.root:
            guesses.append(name.to_text(omit_final_dot=True))
            name = name.parent()

        return guesses

    @staticmethod
    def compute_record_name(zone_name: str, full_record_name: str) -> str:
        """Strips the zone from a record name, DigitalOcean appends it to every record automatically."""
        return full_record_name.rpartition("." + zone_name)[0]
