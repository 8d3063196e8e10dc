#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acertdns - generic acme api functions
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE


class ACMEAuthority:
    # @brief Init class with config
    # @param config Configuration data
    # @param key Account key data
    def __init__(self, config, key):
        self.key = key
        self.config = config

    # @brief register an account over ACME (no-op if it is already registered)
    # @param identity the contact email address of the account
    def register_account(self, identity):
        raise NotImplementedError

    # @brief create an order for a domain and fetch its authorization
    # @param domain the domain to order a certificate for
    # @return the authorization (including the offered challenges)
    def request_authorization(self, domain):
        raise NotImplementedError

    # @brief tell the authority a challenge is ready and wait for the authorization to be verified
    # @param challenge the challenge (must contain its url and the authorization url)
    def notify_challenge_ready(self, challenge):
        raise NotImplementedError

    # @brief finalize an order with a csr and download the issued certificate
    # @param domain the (already authorized) domain
    # @param csr the certificate signing request in cryptography format
    # @param order_url the order created along with the authorization (a new order is created if it is unusable)
    # @return the certificate and corresponding ca as a tuple
    def finalize_order(self, domain, csr, order_url=None):
        raise NotImplementedError
