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

import logging
import pathlib
import sys

import cert_issuer

logging.basicConfig(level=logging.INFO)

# Read the DigitalOcean API token from a file next to this script
token = pathlib.Path(__file__).parent.joinpath("test-token.txt").read_text(encoding="utf-8").strip()

# Create an issuer for a domain and its wildcard. In this example, the Let's Encrypt staging environment.
issuer = cert_issuer.CertificateIssuer(
    token=token,
    domains=["*.example.com", "example.com"],
    maintainer_email="user@example.com",
    subscriber_email="user@example.com",
    staging=True,
)

issuer.show_help()

try:
    issuer.init()
    issuer.account()
    issuer.set_save_path("/certs")
    issuer.create_certificate()
except (cert_issuer.errors.IssuanceFailed, cert_issuer.errors.PersistenceFailed) as err:
    print("Failed to issue certificate for " + str(issuer.domains) + ": " + err.message)
    sys.exit(1)
