#!/usr/bin/env python
# -*- coding: utf-8 -*-

# coordinator - three phase certificate issuance (create order, verify dns, finish order)
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import collections
import datetime

from acertdns import tools
from acertdns.account import AccountIdentity
from acertdns.authority import authority
from acertdns.cache import FileChallengeCache
from acertdns.errors import ChallengeNotFoundError, AuthorizationInvalidError, ProtocolError
from acertdns.modes import challenge_handler
from acertdns.store import CertificateStore, CertificateBundle
from acertdns.tools import log

DNSRecord = collections.namedtuple('DNSRecord', ['type', 'name', 'record'])
OrderCreated = collections.namedtuple('OrderCreated', ['dns'])
VerificationResult = collections.namedtuple('VerificationResult', ['matched'])
CertificateIssued = collections.namedtuple('CertificateIssued', ['key_path', 'cert_path', 'issuer_cert_path'])


class OrderCoordinator:
    # @param identity the operator identity (email address) owning the account
    # @param account_key the account KeyPair
    # @param authority the ACMEAuthority used for all protocol exchanges
    # @param cache the challenge cache keeping pending challenges between invocations
    # @param store the CertificateStore receiving issued bundles
    # @param handler the challenge handler deriving and verifying the dns record
    # @param key_algorithm/key_length parameters for newly generated domain keys
    def __init__(self, identity, account_key, authority, cache, store, handler, key_algorithm=None,
                 key_length=None):
        self.identity = identity
        self.account_key = account_key
        self.authority = authority
        self.cache = cache
        self.store = store
        self.handler = handler
        self.key_algorithm = key_algorithm
        self.key_length = key_length
        self.thumbprint = tools.get_jwk_thumbprint(account_key.private_key)

    # @brief load the pending challenge of a domain
    # @raise ChallengeNotFoundError if there is none
    def _cached_challenge(self, domain):
        challenge = self.cache.get(tools.sanitize(domain))
        if not challenge:
            raise ChallengeNotFoundError("No pending challenge found for {}, create an order first".format(domain))
        return challenge

    # @brief determine the dns record for a cached challenge
    def _dns_record(self, challenge):
        return DNSRecord(**self.handler.describe_challenge(challenge['identifier'], self.thumbprint,
                                                           challenge['token']))

    # @brief phase 1: order a certificate and determine the dns record to publish
    # @param domain the domain to order a certificate for
    # @return OrderCreated with the DNSRecord the operator has to add
    def create_order(self, domain):
        key = tools.sanitize(domain)
        with self.cache.lock(key):
            self.authority.register_account(self.identity)
            authorization = self.authority.request_authorization(domain)

            ctype = self.handler.get_challenge_type()
            matching_challenges = [c for c in authorization.get('challenges', []) if c.get('type') == ctype]
            if len(matching_challenges) == 0:
                raise ProtocolError("Error no challenge matching {0} found for {1}".format(ctype, domain))
            challenge = matching_challenges[0]

            entry = {
                'domain': domain,
                'identifier': authorization.get('identifier', {}).get('value', domain),
                'wildcard': bool(authorization.get('wildcard')),
                'type': challenge['type'],
                'url': challenge['url'],
                'token': challenge['token'],
                'status': challenge.get('status', 'pending'),
                'authorization': authorization['url'],
                'order': authorization.get('order'),
                'created': datetime.datetime.now(datetime.timezone.utc).isoformat(),
            }
            if self.cache.get(key):
                log("Replacing pending challenge of {}".format(domain), warning=True)
            self.cache.put(key, entry)

        record = self._dns_record(entry)
        log('Please add \'{} IN TXT "{}"\' for {}'.format(record.name, record.record, domain))
        return OrderCreated(dns=record)

    # @brief phase 2 (optional): check the published dns record locally
    # @param domain the domain of a previously created order
    # @return VerificationResult telling whether the expected TXT record is visible
    def verify_order(self, domain):
        challenge = self._cached_challenge(domain)
        record = self._dns_record(challenge)
        matched = self.handler.verify_challenge(challenge['identifier'], self.thumbprint, challenge['token'])
        if matched:
            log("TXT record '{}' found with the expected value".format(record.name))
        return VerificationResult(matched=matched)

    # @brief phase 3: let the authority validate the challenge and obtain the certificate
    # @param domain the domain of a previously created order
    # @return CertificateIssued with the paths of the written files
    def finish_order(self, domain):
        key = tools.sanitize(domain)
        with self.cache.lock(key):
            challenge = self._cached_challenge(domain)

            self.authority.register_account(self.identity)
            try:
                self.authority.notify_challenge_ready(challenge)
            except AuthorizationInvalidError:
                log("Authorization for {} failed, a new order has to be created".format(domain), error=True)
                raise

            log("Generating key and CSR for {}".format(domain))
            domain_key = tools.new_ssl_key(self.key_algorithm, self.key_length)
            csr = tools.new_cert_request(domain, domain_key)
            crt, ca = self.authority.finalize_order(domain, csr, challenge.get('order'))

            paths = self.store.write(domain, CertificateBundle(domain_key, crt, ca))
            self.cache.forget(key)
        return CertificateIssued(*paths)


# @brief create a coordinator and all its collaborators from configuration
# @param config the runtime configuration (see configuration.load)
def coordinator_from_config(config):
    identity = config['email']
    account = AccountIdentity(config['account_dir'], config.get('account_key_algorithm'),
                              config.get('account_key_length'))
    account_key = account.load_or_create(identity)
    return OrderCoordinator(
        identity,
        account_key,
        authority(config['authority'], account_key.private_key),
        FileChallengeCache(config['cache_dir']),
        CertificateStore(config['certificate_dir']),
        challenge_handler(config),
        config.get('key_algorithm'),
        config.get('key_length'),
    )
