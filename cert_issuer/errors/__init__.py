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
"""Custom exception classes for cert_issuer."""


class ConfigurationError(Exception):
    """Error occurs when the issuer is misconfigured or its steps are called out of order"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidToken(ConfigurationError):
    """Error occurs when no DigitalOcean API token was provided"""


class InvalidDomain(ConfigurationError):
    """Error occurs when the domain list is empty or contains an invalid domain name"""


class InvalidEmail(ConfigurationError):
    """Error occurs when a required email address is missing or invalid"""


class InvalidAccount(ConfigurationError):
    """Error occurs when certificates are requested before an ACME account is registered"""


class SessionNotInitialized(ConfigurationError):
    """Error occurs when the ACME session and keys are used before init() has run"""


class InvalidPath(ConfigurationError):
    """Error occurs when a requested file path does not exist"""


class CSRBuildFailed(Exception):
    """Error occurs when the certificate signing request could not be built"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class IssuanceFailed(Exception):
    """Error occurs when the ACME server did not issue the certificate"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ChallengeUnavailable(IssuanceFailed):
    """Error occurs when the requested ACME server does not offer the DNS-01 challenge"""


class ChallengeProviderError(IssuanceFailed):
    """Error occurs when the DNS provider could not publish a challenge record"""


class PersistenceFailed(Exception):
    """Error occurs when the private key or certificate chain could not be written to disk"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
