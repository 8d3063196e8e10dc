#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acertdns - acme api v2 functions (implements RFC8555)
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import datetime
import email.utils
import json
import time
from http.client import HTTPException
from urllib.error import HTTPError

from acertdns import tools
from acertdns.authority.acme import ACMEAuthority as AbstractACMEAuthority
from acertdns.errors import ProtocolError, ClientError, ServerError, RateLimitedError, AuthorizationInvalidError, \
    ProtocolTimeoutError, TransportError
from acertdns.tools import log

# Maximum age for nonce values (Boulder invalidates them after some time, so we use a low value of 2 minutes here)
MAX_NONCE_AGE = 120
DEFAULT_REQUEST_TIMEOUT = 30  # seconds
DEFAULT_POLL_INTERVAL = 5  # seconds
DEFAULT_POLL_ATTEMPTS = 60
DEFAULT_MAX_RETRIES = 3
MAX_BACKOFF = 300  # seconds

PROBLEM_PREFIX = "urn:ietf:params:acme:error:"
PROBLEM_BAD_NONCE = PROBLEM_PREFIX + "badNonce"
PROBLEM_RATE_LIMITED = PROBLEM_PREFIX + "rateLimited"
# Orders in processing or valid state were finalized with a csr whose key is unknown here
ORDER_RESUMABLE_STATES = ('pending', 'ready')


# @brief parse a Retry-After header value (delay seconds or http date)
# @return seconds to wait or None
def parse_retry_after(value):
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        retry_at = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=datetime.timezone.utc)
    return max(0, int((retry_at - datetime.datetime.now(datetime.timezone.utc)).total_seconds()))


class ACMEAuthority(AbstractACMEAuthority):
    # @brief Init class with config
    # @param config Configuration data
    # @param key Account key data
    def __init__(self, config, key):
        AbstractACMEAuthority.__init__(self, config, key)
        # Initialize config vars
        self.ca = config['authority']
        self.tos_agreed = str(config.get('authority_tos_agreement')).lower() == 'true'
        self.timeout = int(config.get('request_timeout', DEFAULT_REQUEST_TIMEOUT))
        self.poll_interval = float(config.get('poll_interval', DEFAULT_POLL_INTERVAL))
        self.poll_attempts = int(config.get('poll_attempts', DEFAULT_POLL_ATTEMPTS))
        self.max_retries = int(config.get('max_retries', DEFAULT_MAX_RETRIES))

        # Initialize runtime vars
        self._directory = None
        self.nonce = None
        self.nonce_time = 0

        self.algorithm, self.jwk = tools.get_key_alg_and_jwk(key)
        self.account_id = None  # will be updated to correct value during account registration

    # @brief the authority directory (retrieved on first use)
    @property
    def directory(self):
        if self._directory is None:
            reason = "API directory retrieval failed from {}".format(self.ca)
            _, directory, _ = self._with_retries(lambda: self._request_url(self.ca), reason)
            if not isinstance(directory, dict):
                raise ProtocolError(reason, detail="directory is not a JSON object")
            self._directory = directory
        return self._directory

    # @brief fetch a given url
    # @return tuple of status code, body (json decoded unless raw_result is set) and headers
    def _request_url(self, url, data=None, raw_result=False):
        header = {'Content-Type': 'application/jose+json'}
        if raw_result:
            header['Accept'] = 'application/pem-certificate-chain'
        if data:
            # Always encode data to bytes
            data = data.encode('utf-8')
        try:
            resp = tools.get_url(url, data, header, timeout=self.timeout)
            code = resp.getcode()
            headers = resp.headers
            body = resp.read().decode('utf-8')
        except HTTPError as e:
            # error responses carry a problem document (and usually a fresh nonce)
            self._store_nonce(e.headers)
            try:
                body = e.read().decode('utf-8', 'replace')
            except (OSError, HTTPException) as read_error:
                raise TransportError("Could not read error response from {}".format(url), e.code,
                                     detail=str(read_error))
            try:
                body = json.loads(body)
            except ValueError:
                pass
            return e.code, body, e.headers or {}
        except (OSError, HTTPException) as e:
            raise TransportError("Could not reach {}".format(url), detail=str(e) or type(e).__name__)

        self._store_nonce(headers)
        if not raw_result and len(body) > 0:
            try:
                body = json.loads(body)
            except ValueError:
                raise ProtocolError("Could not parse non-raw result from {} (expected JSON)".format(url),
                                    code, detail=body[:200])

        return code, body, headers

    # @brief store next Replay-Nonce if it is in the header
    def _store_nonce(self, headers):
        if headers is not None and 'Replay-Nonce' in headers:
            self.nonce = headers['Replay-Nonce']
            self.nonce_time = time.time()

    # @brief fetch an url with a signed request (single attempt)
    # @param payload request payload, None for POST-as-GET
    def _send_signed(self, url, payload=None, raw_result=False):
        if payload is not None:
            payload64 = tools.bytes_to_base64url(json.dumps(payload).encode('utf8'))
        else:
            payload64 = ""  # for POST-as-GET

        # Request a new nonce if there is none in cache
        if not self.nonce or time.time() > self.nonce_time + MAX_NONCE_AGE:
            self._request_url(self.directory['newNonce'])
        protected = {
            "alg": self.algorithm,
            # Set request nonce to current cache value
            "nonce": self.nonce,
            "url": url,
        }
        # Reset nonce cache as we are using it's current value
        self.nonce = None
        if self.account_id:
            protected["kid"] = self.account_id
        else:
            protected["jwk"] = self.jwk
        protected64 = tools.bytes_to_base64url(json.dumps(protected).encode('utf8'))
        out = tools.signature_of_str(self.key, '.'.join([protected64, payload64]))
        data = json.dumps({
            "protected": protected64,
            "payload": payload64,
            "signature": tools.bytes_to_base64url(out),
        })
        return self._request_url(url, data, raw_result)

    # @brief send a request, retrying transient failures
    # @param send callable performing a single attempt, returning a tuple of status code, body and headers
    # @param reason description used for errors raised if the request fails
    def _with_retries(self, send, reason):
        attempt = 0
        while True:
            try:
                code, body, headers = send()
                if code < 400:
                    return code, body, headers
                error = self._problem_error(reason, code, body, headers)
            except TransportError as e:
                error = e

            if attempt >= self.max_retries or not (error.retryable or error.type == PROBLEM_BAD_NONCE):
                raise error
            if error.type == PROBLEM_BAD_NONCE:
                # a fresh nonce is all that is needed, the error response has already provided it
                wait = 0
            elif getattr(error, 'retry_after', None) is not None:
                if error.retry_after > MAX_BACKOFF:
                    # waiting that long is left to the operator
                    raise error
                wait = error.retry_after
            else:
                wait = min(MAX_BACKOFF, self.poll_interval * (2 ** attempt))
            attempt += 1
            log("{}, retrying in {} seconds ({}/{})".format(error, wait, attempt, self.max_retries), warning=True)
            if wait > 0:
                time.sleep(wait)

    # @brief fetch an url with a signed request, retrying transient failures
    # @param reason description used for errors raised if the request fails
    def _request_acme_url(self, url, payload=None, raw_result=False, reason=None):
        return self._with_retries(lambda: self._send_signed(url, payload, raw_result),
                                  reason or "Request to {} failed".format(url))

    # @brief send a signed request to a directory endpoint
    def _request_acme_endpoint(self, request, payload=None, raw_result=False, reason=None):
        return self._request_acme_url(self.directory[request], payload, raw_result, reason)

    # @brief map an error response to the matching ProtocolError
    @staticmethod
    def _problem_error(reason, code, body, headers):
        if isinstance(body, dict):
            problem_type = body.get('type')
            detail = body.get('detail')
        else:
            problem_type = None
            detail = str(body)[:200] if body else None
        if problem_type == PROBLEM_RATE_LIMITED or code == 429:
            return RateLimitedError(reason, code, problem_type, detail,
                                    parse_retry_after(headers.get('Retry-After') if headers else None))
        elif code >= 500:
            return ServerError(reason, code, problem_type, detail)
        return ClientError(reason, code, problem_type, detail)

    # @brief poll a resource as long as it is in one of the waiting states
    # @return the last retrieved state of the resource
    def _poll(self, url, resource, waiting_states, headers=None, reason=None):
        attempts = 0
        while resource.get('status') in waiting_states:
            if attempts >= self.poll_attempts:
                raise ProtocolTimeoutError("{} is still {} after {} attempts".format(url, resource.get('status'),
                                                                                   attempts))
            attempts += 1
            wait = parse_retry_after(headers.get('Retry-After') if headers else None)
            time.sleep(self.poll_interval if wait is None else min(MAX_BACKOFF, wait))
            _, resource, headers = self._request_acme_url(url, reason=reason)
        return resource

    # @brief register an account over ACME
    def register_account(self, identity):
        if self.account_id:
            # We already have registered with this authority, just return
            return

        payload = {
            "termsOfServiceAgreed": self.tos_agreed,
            "onlyReturnExisting": False,
        }
        if identity:
            payload["contact"] = ["mailto:{}".format(identity)]
        code, result, headers = self._request_acme_endpoint("newAccount", payload,
                                                            reason="Error registering account")
        if result.get('status') != 'valid' or 'Location' not in headers:
            raise ClientError("Error registering account", code, detail="account status {}".format(
                result.get('status')))
        self.account_id = headers['Location']
        if code == 200:
            log("Account already registered on {}.".format(self.ca))
        else:
            if 'termsOfService' in self.directory.get('meta', {}):
                log("ToS at {} have been accepted.".format(self.directory['meta']['termsOfService']))
            log("Account registered and valid on {}.".format(self.ca))

    # @brief create a new order for a single domain
    # @return tuple of order url and order
    def _new_order(self, domain):
        log("Ordering certificate for {}".format(domain))
        _, order, headers = self._request_acme_endpoint('newOrder', {
            'identifiers': [{'type': 'dns', 'value': domain}],
        }, reason="Error with certificate order")
        return headers.get('Location'), order

    def request_authorization(self, domain):
        order_url, order = self._new_order(domain)
        if not order.get('authorizations'):
            raise ProtocolError("Order for {} contains no authorizations".format(domain))

        authorization_url = order['authorizations'][0]
        _, authorization, _ = self._request_acme_url(authorization_url, reason="Error requesting authorization")
        authorization['url'] = authorization_url
        authorization['order'] = order_url
        return authorization

    def notify_challenge_ready(self, challenge):
        authorization_url = challenge['authorization']
        _, authorization, _ = self._request_acme_url(authorization_url, reason="Error requesting authorization")
        if authorization.get('status') == 'pending':
            current = [c for c in authorization.get('challenges', []) if c.get('url') == challenge['url']]
            if not current or current[0].get('status') == 'pending':
                log("Starting verification of {}".format(challenge.get('domain', authorization_url)))
                # notify challenge is met
                self._request_acme_url(challenge['url'], {}, reason="Error notifying challenge")

        # wait for challenge to be verified
        authorization = self._poll(authorization_url, authorization, ('pending',),
                                   reason="Error requesting authorization")
        status = authorization.get('status')
        if status == 'valid':
            log("{0} verified".format(authorization.get('identifier', {}).get('value', authorization_url)))
            return authorization

        problem = dict()
        for c in authorization.get('challenges', []):
            if c.get('url') == challenge['url'] and c.get('error'):
                problem = c['error']
        raise AuthorizationInvalidError("Challenge did not pass (authorization {})".format(status),
                                        type=problem.get('type'), detail=problem.get('detail'))

    # @brief fetch an order created earlier, if it can still be finalized
    # @return the order or None if it is gone or past the point of accepting a csr
    def _resume_order(self, order_url):
        try:
            _, order, _ = self._request_acme_url(order_url, reason="Error requesting order")
        except ClientError as e:
            log("Order {} is no longer available ({}), creating a new one".format(order_url, e), warning=True)
            return None
        if order.get('status') not in ORDER_RESUMABLE_STATES:
            log("Order {} is {}, creating a new one".format(order_url, order.get('status')), warning=True)
            return None
        return order

    def finalize_order(self, domain, csr, order_url=None):
        order = self._resume_order(order_url) if order_url else None
        if order is None:
            order_url, order = self._new_order(domain)
            if not order_url:
                raise ProtocolError("Order for {} has no location".format(domain))

        # check order status (authorizations should be valid already)
        order = self._poll(order_url, order, ('pending',), reason="Error requesting order")
        if order.get('status') == 'ready':
            log("Finalizing certificate")
            _, order, headers = self._request_acme_url(order['finalize'], {
                "csr": tools.bytes_to_base64url(tools.convert_cert_to_der_bytes(csr)),
            }, reason="Error finalizing certificate")
            order = self._poll(order_url, order, ('ready', 'processing'), headers, reason="Error requesting order")
        if order.get('status') != 'valid' or 'certificate' not in order:
            problem = order.get('error', {})
            raise ProtocolError("Order for {} could not be finalized (status {})".format(domain, order.get('status')),
                                type=problem.get('type'), detail=problem.get('detail'))
        log("Certificate ready!")

        # return certificate
        _, chain, _ = self._request_acme_url(order['certificate'], raw_result=True,
                                             reason="Error downloading certificate chain")
        certificates = tools.split_pem_chain(chain)
        if not certificates:
            raise ProtocolError("Certificate chain for {} contains no certificate".format(domain))
        cert = certificates[0]
        if len(certificates) > 1:
            ca = certificates[1]
        else:
            try:
                ca = tools.download_issuer_ca(cert, self.timeout)
            except (OSError, HTTPException) as e:
                raise TransportError("Could not download issuer certificate", detail=str(e))
            if ca is None:
                raise ProtocolError("Could not determine issuer certificate for {}".format(domain))

        return cert, ca
