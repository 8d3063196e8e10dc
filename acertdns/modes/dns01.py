#!/usr/bin/env python
# -*- coding: utf-8 -*-

# dns01 - manual dns-01 challenge handler
# Copyright (c) Rudolf Mayerhofer, 2018-2019
# available under the ISC license, see LICENSE

import dns.exception
import dns.rdatatype
import dns.resolver

from acertdns import tools
from acertdns.modes.abstract import AbstractChallengeHandler
from acertdns.tools import log

QUERY_TIMEOUT = 60  # seconds are the maximum for any query (otherwise the DNS server will be considered dead)
CHALLENGE_PREFIX = "_acme-challenge"


# @brief determine the TXT record name for a dns-01 challenge
def record_name(domain):
    if domain.startswith('*.'):
        domain = domain[2:]
    return "{0}.{1}".format(CHALLENGE_PREFIX, domain.rstrip('.'))


# @brief determine the TXT record value for a dns-01 challenge
def record_value(token, thumbprint):
    return tools.bytes_to_base64url(tools.hash_of_str("{0}.{1}".format(token, thumbprint)))


class DNSValidator:
    # @param nameservers list of nameserver ips to query (default: system resolver configuration)
    # @param timeout maximum seconds a lookup may take
    def __init__(self, nameservers=None, timeout=QUERY_TIMEOUT):
        if nameservers:
            self.resolver = dns.resolver.Resolver(configure=False)
            self.resolver.nameservers = list(nameservers)
        else:
            self.resolver = dns.resolver.Resolver()
        self.timeout = timeout

    # @brief look up all TXT values of a record
    # @return list of TXT values (character strings joined)
    def lookup(self, name):
        answer = self.resolver.resolve(name, dns.rdatatype.TXT, lifetime=self.timeout)
        return [b''.join(rdata.strings).decode('utf-8', 'replace') for rdata in answer]

    # @brief check whether a TXT record has the expected value
    # @return True if any of the TXT values equals expected, False otherwise (also on lookup failure)
    def check(self, name, expected):
        try:
            values = self.lookup(name)
        except dns.exception.DNSException as e:
            log("TXT lookup for '{}' failed: {}".format(name, e), warning=True)
            return False
        if expected in values:
            return True
        log("TXT record '{}' does not (yet) contain the expected value, found: {}".format(name, values))
        return False


class ChallengeHandler(AbstractChallengeHandler):
    @staticmethod
    def get_challenge_type():
        return "dns-01"

    def __init__(self, config, validator=None):
        AbstractChallengeHandler.__init__(self, config)
        if validator is None:
            servers = config.get("dns_verify_server")
            if servers and not isinstance(servers, list):
                servers = [servers]
            validator = DNSValidator(servers, int(config.get("dns_timeout", QUERY_TIMEOUT)))
        self.validator = validator

    def describe_challenge(self, domain, thumbprint, token):
        return {
            'type': 'txt',
            'name': record_name(domain),
            'record': record_value(token, thumbprint),
        }

    def verify_challenge(self, domain, thumbprint, token):
        return self.validator.check(record_name(domain), record_value(token, thumbprint))
