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
"""Command line runner that issues a certificate and saves it to disk."""
import argparse
import logging
import os
import pathlib
import sys

import acme.errors
import josepy as jose
import requests

import cert_issuer
from cert_issuer import errors


# Constants and Variables
EXIT_OK = 0
EXIT_CONFIGURATION = 1
EXIT_ISSUANCE = 2
EXIT_PERSISTENCE = 3
LOG_FORMAT = '%(asctime)s [ %(name)s ] %(levelname)s: %(message)s'
logger = logging.getLogger('cert_issuer')


def build_parser() -> argparse.ArgumentParser:
    """Builds the argument parser for the `cert-issuer` command."""
    parser = argparse.ArgumentParser(
        prog='cert-issuer',
        description="Obtain a certificate from an ACME server using DNS-01 challenges published through DigitalOcean. "
                    "The key and certificate chain are saved as privkey.pem and fullchain.pem.",
        epilog="cert-issuer -d example.com -d '*.example.com' --email admin@example.com --token-file do-token.txt"
    )
    parser.add_argument("-d", "--domain", dest="domains", action="append", required=True,
                        help="domain to include in the certificate, may be repeated")
    parser.add_argument("--email", required=True, help="email address to register the ACME account with")
    parser.add_argument("--maintainer-email", help="email address of the maintainer (defaults to --email)")
    parser.add_argument("--token", default=os.environ.get("DIGITALOCEAN_TOKEN"),
                        help="DigitalOcean API token (defaults to $DIGITALOCEAN_TOKEN)")
    parser.add_argument("--token-file", help="file holding the DigitalOcean API token")
    parser.add_argument("--save-path", help="directory to save privkey.pem and fullchain.pem to")
    parser.add_argument("--staging", action="store_true", help="use the ACME staging server")
    parser.add_argument("--directory", default=os.environ.get("ACME_DIRECTORY"),
                        help="ACME directory URL, overrides --staging (defaults to $ACME_DIRECTORY)")
    parser.add_argument("--propagation-delay", type=int, default=cert_issuer.challenges.PROPAGATION_DELAY,
                        help="seconds to wait for DNS records to propagate")
    parser.add_argument("-v", "--verbose", action="store_const", const=logging.DEBUG, dest="log_level",
                        default=logging.INFO, help="log debug output")
    parser.add_argument("-q", "--quiet", action="store_const", const=logging.WARNING, dest="log_level",
                        help="only log warnings and errors")
    return parser


def read_token(args: argparse.Namespace) -> str:
    """
    Reads the DigitalOcean token from `--token-file` if given, otherwise from `--token`.

    Raises:
        cert_issuer.errors.InvalidPath: When the token file does not exist.
    """
    if not args.token_file:
        return args.token

    token_path = pathlib.Path(args.token_file)
    if not token_path.is_file():
        raise errors.InvalidPath(f"No token file found at '{token_path}'")

    return token_path.read_text(encoding="utf-8").strip()


def main(argv: list = None) -> int:
    """Runs a complete issuance and returns the process exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(format=LOG_FORMAT, level=args.log_level)

    try:
        issuer = cert_issuer.CertificateIssuer(
            token=read_token(args),
            domains=args.domains,
            maintainer_email=args.maintainer_email or args.email,
            subscriber_email=args.email,
            staging=args.staging,
            log=logger,
            directory=args.directory,
            propagation_delay=args.propagation_delay
        )
        issuer.init()
        issuer.account()
        if args.save_path:
            issuer.set_save_path(args.save_path)
        issuer.create_certificate()
    except errors.ConfigurationError as err:
        logger.error('Configuration error: %s', err.message)
        return EXIT_CONFIGURATION
    except errors.PersistenceFailed as err:
        logger.error('Persistence failed: %s', err.message)
        return EXIT_PERSISTENCE
    except (errors.CSRBuildFailed, errors.IssuanceFailed) as err:
        logger.error('Issuance failed: %s', err.message)
        return EXIT_ISSUANCE
    except (acme.errors.Error, jose.Error, requests.exceptions.RequestException) as err:
        logger.error('ACME request failed: %s', err)
        return EXIT_ISSUANCE

    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main(sys.argv[1:]))
