#!/usr/bin/env python
# -*- coding: utf-8 -*-

# test fixtures - fake acme authority and dns
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import base64
import datetime
import hashlib
import io
import json
import socket
from urllib.error import HTTPError, URLError

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID, AuthorityInformationAccessOID

from acertdns import tools
from acertdns.account import KeyPair
from acertdns.authority import v2
from acertdns.cache import MemoryChallengeCache
from acertdns.coordinator import OrderCoordinator
from acertdns.modes import dns01
from acertdns.store import CertificateStore

CA_BASE = "https://ca.test"
DIRECTORY_URL = CA_BASE + "/directory"
ISSUER_URL = CA_BASE + "/issuer.der"


def b64decode(data):
    return base64.urlsafe_b64decode(data + '=' * (-len(data) % 4))


def read_pem_file(path, key=False):
    with io.open(path, 'rb') as f:
        if key:
            return tools.convert_pem_bytes_to_key(f.read())
        return x509.load_pem_x509_certificate(f.read())


def new_issuer():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Fake Authority"),
        x509.NameAttribute(NameOID.COMMON_NAME, "Fake Intermediate R1"),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder() \
        .subject_name(name) \
        .issuer_name(name) \
        .public_key(key.public_key()) \
        .serial_number(x509.random_serial_number()) \
        .not_valid_before(now - datetime.timedelta(days=1)) \
        .not_valid_after(now + datetime.timedelta(days=365)) \
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True) \
        .sign(key, hashes.SHA256())
    return key, cert


def issue_certificate(csr, issuer_key, issuer_cert, days=90):
    now = datetime.datetime.now(datetime.timezone.utc)
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    return x509.CertificateBuilder() \
        .subject_name(csr.subject) \
        .issuer_name(issuer_cert.subject) \
        .public_key(csr.public_key()) \
        .serial_number(x509.random_serial_number()) \
        .not_valid_before(now - datetime.timedelta(minutes=5)) \
        .not_valid_after(now + datetime.timedelta(days=days)) \
        .add_extension(san, critical=False) \
        .add_extension(x509.AuthorityInformationAccess([
            x509.AccessDescription(AuthorityInformationAccessOID.CA_ISSUERS,
                                   x509.UniformResourceIdentifier(ISSUER_URL)),
        ]), critical=False) \
        .sign(issuer_key, hashes.SHA256())


class FakeResponse:
    def __init__(self, code, body=b'', headers=None):
        self.code = code
        self.body = body
        self.headers = headers or {}

    def getcode(self):
        return self.code

    def read(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class FakeAuthority:
    """In-process RFC 8555 authority answering the requests sent through tools.get_url.

    Challenges are validated against ``dns_records`` (name -> list of TXT values), the same
    mapping the stub resolver of the tests answers from.
    """

    def __init__(self, dns_records):
        self.dns_records = dns_records
        self.issuer_key, self.issuer_cert = new_issuer()
        self.directory = {
            "newNonce": CA_BASE + "/new-nonce",
            "newAccount": CA_BASE + "/new-acct",
            "newOrder": CA_BASE + "/new-order",
            "meta": {"termsOfService": CA_BASE + "/terms"},
        }
        self.requests = list()
        self.failures = list()
        self.nonces = set()
        self.nonce_counter = 0
        self.accounts = dict()
        self.orders = dict()
        self.authorizations = dict()
        self.certificates = dict()
        self.counter = 0
        # behaviour knobs
        self.validation_polls = 1
        self.processing_polls = 1
        self.include_issuer = True
        self.offer_dns = True
        self.reuse_authorizations = True

    def fail_next(self, path, code, problem_type=None, detail="injected failure", headers=None, transport=False,
                  broken_read=False):
        self.failures.append({'path': path, 'code': code, 'type': problem_type, 'detail': detail,
                              'headers': headers or {}, 'transport': transport, 'broken_read': broken_read})

    def requests_to(self, path):
        return [r for r in self.requests if r['url'] == CA_BASE + path]

    def _next_id(self):
        self.counter += 1
        return str(self.counter)

    def _nonce(self):
        self.nonce_counter += 1
        nonce = "nonce-{}".format(self.nonce_counter)
        self.nonces.add(nonce)
        return nonce

    def _json(self, code, body, headers=None):
        headers = dict(headers or {})
        headers['Replay-Nonce'] = self._nonce()
        return FakeResponse(code, json.dumps(body).encode('utf-8'), headers)

    def _error(self, url, code, problem_type, detail, headers=None):
        headers = dict(headers or {})
        headers['Replay-Nonce'] = self._nonce()
        body = json.dumps({"type": problem_type, "detail": detail, "status": code}).encode('utf-8')
        raise HTTPError(url, code, detail, headers, io.BytesIO(body))

    def thumbprint(self, account_url):
        jwk = self.accounts[account_url]
        return base64.urlsafe_b64encode(
            hashlib.sha256(json.dumps(jwk, sort_keys=True, separators=(',', ':')).encode('utf8')).digest()
        ).decode('utf8').rstrip('=')

    def __call__(self, url, data=None, headers=None, timeout=None):
        path = url[len(CA_BASE):]
        for failure in list(self.failures):
            if failure['path'] == path:
                self.failures.remove(failure)
                if failure['transport']:
                    raise URLError("connection refused")
                if failure['broken_read']:
                    # the connection stalls after the status line
                    return FakeResponse(200, socket.timeout("timed out"), {'Replay-Nonce': self._nonce()})
                self._error(url, failure['code'], failure['type'], failure['detail'], failure['headers'])

        if data is None:
            if url == DIRECTORY_URL:
                return FakeResponse(200, json.dumps(self.directory).encode('utf-8'))
            if url == self.directory['newNonce']:
                return FakeResponse(204, b'', {'Replay-Nonce': self._nonce()})
            if url == ISSUER_URL:
                return FakeResponse(200, self.issuer_cert.public_bytes(serialization.Encoding.DER))
            self._error(url, 404, "urn:ietf:params:acme:error:malformed", "not found")

        jws = json.loads(data.decode('utf-8'))
        protected = json.loads(b64decode(jws['protected']))
        payload = json.loads(b64decode(jws['payload'])) if jws['payload'] else None
        self.requests.append({'url': url, 'protected': protected, 'payload': payload})
        assert protected['url'] == url
        assert not ('jwk' in protected and 'kid' in protected)
        if protected.get('nonce') not in self.nonces:
            self._error(url, 400, v2.PROBLEM_BAD_NONCE, "JWS has an invalid anti-replay nonce")
        self.nonces.discard(protected['nonce'])

        if url == self.directory['newAccount']:
            return self._new_account(protected, payload)
        account = protected.get('kid')
        if account not in self.accounts:
            self._error(url, 401, "urn:ietf:params:acme:error:accountDoesNotExist", "unknown account")
        if url == self.directory['newOrder']:
            return self._new_order(payload)
        if path.startswith('/order/'):
            return self._order(path.split('/')[2])
        if path.startswith('/authz/'):
            return self._authorization(path.split('/')[2])
        if path.startswith('/chall/'):
            return self._challenge(account, path.split('/')[2], payload)
        if path.startswith('/finalize/'):
            return self._finalize(path.split('/')[2], payload)
        if path.startswith('/cert/'):
            return self._certificate(path.split('/')[2])
        self._error(url, 404, "urn:ietf:params:acme:error:malformed", "not found")

    def _new_account(self, protected, payload):
        jwk = protected['jwk']
        for account_url, account_jwk in self.accounts.items():
            if account_jwk == jwk:
                return self._json(200, {"status": "valid"}, {'Location': account_url})
        account_url = CA_BASE + "/acct/" + self._next_id()
        self.accounts[account_url] = jwk
        return self._json(201, {"status": "valid", "contact": payload.get('contact')}, {'Location': account_url})

    def _new_order(self, payload):
        identifier = payload['identifiers'][0]['value']
        wildcard = identifier.startswith('*.')
        value = identifier[2:] if wildcard else identifier
        authorization_id = None
        for authz_id, authz in self.authorizations.items():
            if authz['identifier']['value'] == value and authz.get('wildcard', False) == wildcard \
                    and authz['status'] == 'valid' and self.reuse_authorizations:
                authorization_id = authz_id
        if authorization_id is None:
            authorization_id = self._next_id()
            challenges = [{"type": "http-01", "url": CA_BASE + "/chall/" + authorization_id + "-http",
                           "token": "http-token-" + authorization_id, "status": "pending"}]
            if self.offer_dns:
                challenges.append({"type": "dns-01", "url": CA_BASE + "/chall/" + authorization_id,
                                   "token": "dns_token-" + authorization_id, "status": "pending"})
            self.authorizations[authorization_id] = {
                "status": "pending",
                "identifier": {"type": "dns", "value": value},
                "challenges": challenges,
                "_polls": 0,
            }
            if wildcard:
                self.authorizations[authorization_id]['wildcard'] = True
        order_id = self._next_id()
        self.orders[order_id] = {
            "status": "pending",
            "identifiers": payload['identifiers'],
            "authorizations": [CA_BASE + "/authz/" + authorization_id],
            "finalize": CA_BASE + "/finalize/" + order_id,
            "_polls": 0,
        }
        self._update_order(order_id)
        return self._json(201, self._public(self.orders[order_id]), {'Location': CA_BASE + "/order/" + order_id})

    @staticmethod
    def _public(resource):
        return {k: v for k, v in resource.items() if not k.startswith('_')}

    def _update_order(self, order_id):
        order = self.orders[order_id]
        if order['status'] == 'pending':
            states = [self.authorizations[a.split('/')[-1]]['status'] for a in order['authorizations']]
            if all(s == 'valid' for s in states):
                order['status'] = 'ready'
            elif any(s == 'invalid' for s in states):
                order['status'] = 'invalid'
        elif order['status'] == 'processing':
            order['_polls'] += 1
            if order['_polls'] >= self.processing_polls:
                order['status'] = 'valid'
                order['certificate'] = CA_BASE + "/cert/" + order_id

    def _order(self, order_id):
        if order_id not in self.orders:
            self._error(CA_BASE + "/order/" + order_id, 404, "urn:ietf:params:acme:error:malformed", "no such order")
        self._update_order(order_id)
        return self._json(200, self._public(self.orders[order_id]))

    def _authorization(self, authz_id):
        authz = self.authorizations[authz_id]
        dns_challenge = [c for c in authz['challenges'] if c['type'] == 'dns-01']
        if authz['status'] == 'pending' and dns_challenge and dns_challenge[0]['status'] == 'processing':
            authz['_polls'] += 1
            if authz['_polls'] >= self.validation_polls:
                challenge = dns_challenge[0]
                expected = base64.urlsafe_b64encode(hashlib.sha256(
                    "{}.{}".format(challenge['token'], authz['_thumbprint']).encode('utf8')).digest()
                ).decode('utf8').rstrip('=')
                name = "_acme-challenge." + authz['identifier']['value']
                if expected in self.dns_records.get(name, []):
                    challenge['status'] = 'valid'
                    authz['status'] = 'valid'
                else:
                    challenge['status'] = 'invalid'
                    challenge['error'] = {"type": "urn:ietf:params:acme:error:unauthorized",
                                          "detail": "Incorrect TXT record found at " + name}
                    authz['status'] = 'invalid'
        return self._json(200, self._public(authz))

    def _challenge(self, account, challenge_id, payload):
        authz = self.authorizations[challenge_id.split('-')[0]]
        challenge = [c for c in authz['challenges'] if c['url'].endswith('/chall/' + challenge_id)][0]
        if payload == {} and challenge['status'] == 'pending':
            challenge['status'] = 'processing'
            authz['_thumbprint'] = self.thumbprint(account)
        return self._json(200, challenge)

    def _finalize(self, order_id, payload):
        order = self.orders[order_id]
        self._update_order(order_id)
        if order['status'] != 'ready':
            self._error(CA_BASE + "/finalize/" + order_id, 403, "urn:ietf:params:acme:error:orderNotReady",
                        "order is {}".format(order['status']))
        csr = x509.load_der_x509_csr(b64decode(payload['csr']))
        self.certificates[order_id] = issue_certificate(csr, self.issuer_key, self.issuer_cert)
        order['status'] = 'processing'
        return self._json(200, self._public(order), {'Retry-After': '0'})

    def _certificate(self, order_id):
        chain = self.certificates[order_id].public_bytes(serialization.Encoding.PEM)
        if self.include_issuer:
            chain += b"\n" + self.issuer_cert.public_bytes(serialization.Encoding.PEM)
        return FakeResponse(200, chain, {'Replay-Nonce': self._nonce(),
                                         'Content-Type': 'application/pem-certificate-chain'})


class StubValidator:
    def __init__(self, records):
        self.records = records
        self.lookups = list()

    def check(self, name, expected):
        self.lookups.append((name, expected))
        return expected in self.records.get(name, [])


@pytest.fixture
def dns_records():
    return dict()


@pytest.fixture
def fake_ca(monkeypatch, dns_records):
    ca = FakeAuthority(dns_records)
    monkeypatch.setattr(tools, 'get_url', ca)
    return ca


@pytest.fixture
def sleeps(monkeypatch):
    calls = list()
    monkeypatch.setattr(v2.time, 'sleep', calls.append)
    return calls


@pytest.fixture(scope='session')
def account_key():
    return tools.new_ssl_key('ec')


@pytest.fixture
def authority_config():
    return {
        'authority': DIRECTORY_URL,
        'authority_tos_agreement': 'true',
        'request_timeout': 5,
        'poll_interval': 1,
        'poll_attempts': 5,
        'max_retries': 2,
    }


@pytest.fixture
def authority(fake_ca, sleeps, account_key, authority_config):
    return v2.ACMEAuthority(authority_config, account_key)


@pytest.fixture
def validator(dns_records):
    return StubValidator(dns_records)


@pytest.fixture
def cache():
    return MemoryChallengeCache()


@pytest.fixture
def store(tmp_path):
    return CertificateStore(str(tmp_path / "cert" / "certificate"))


@pytest.fixture
def coordinator(authority, account_key, cache, store, validator):
    return OrderCoordinator("admin@example.com", KeyPair(account_key, account_key.public_key()), authority, cache,
                            store, dns01.ChallengeHandler({}, validator=validator), key_algorithm='ec')
