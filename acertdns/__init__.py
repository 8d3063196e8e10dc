#!/usr/bin/env python
# -*- coding: utf-8 -*-

# Three phase DNS-01 certificate manager using ACME
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import sys

from acertdns import configuration
from acertdns.coordinator import coordinator_from_config
from acertdns.errors import AcertdnsError
from acertdns.tools import log, idna_convert, LOG_REPLACEMENTS

ACTION_PROMPTS = (
    ("create", "Create certificate order"),
    ("verify", "Verify domain ownership (check DNS record)"),
    ("finish", "Finish order and obtain certificate"),
)


# @brief ask for the action to run if it was not given on the command line
def prompt_action():
    for index, (_, description) in enumerate(ACTION_PROMPTS, 1):
        print("  [{}] {}".format(index, description))
    while True:
        choice = input("Select the action to run: ").strip()
        if choice.isdigit() and 1 <= int(choice) <= len(ACTION_PROMPTS):
            return ACTION_PROMPTS[int(choice) - 1][0]
        if choice in configuration.ACTIONS:
            return choice
        log("Invalid choice: {}".format(choice), warning=True)


# @brief ask for the domain if it was not given on the command line
def prompt_domain():
    domain = ''
    while not domain:
        domain = input("Domain: ").strip()
    return domain


# @brief run one phase for a domain and report its result
# @return True if the phase succeeded
def run_action(coordinator, action, domain):
    if action == "create":
        result = coordinator.create_order(domain)
        log("Please add the following DNS record:")
        log("  Type:   {}".format(result.dns.type.upper()))
        log("  Name:   {}".format(result.dns.name))
        log("  Record: {}".format(result.dns.record))
        return True
    elif action == "verify":
        result = coordinator.verify_order(domain)
        if result.matched:
            log("DNS verification succeeded")
        else:
            log("DNS verification failed", warning=True)
        return result.matched
    elif action == "finish":
        result = coordinator.finish_order(domain)
        log("Certificate issued successfully")
        log("  Private key:        {}".format(result.key_path))
        log("  Certificate:        {}".format(result.cert_path))
        log("  Issuer certificate: {}".format(result.issuer_cert_path))
        return True
    raise ValueError("Unknown action: {}".format(action))


def main(args=None):
    # load config
    try:
        config = configuration.load(args)
    except ValueError as e:
        log("Invalid configuration: {}".format(e), error=True)
        sys.exit(1)
    action = config['action'] or prompt_action()
    domain, unicode_domain = idna_convert([config['domain'] or prompt_domain()])[0]
    # register idna-mapped domains as LOG_REPLACEMENTS for better readability of log output
    if domain != unicode_domain:
        LOG_REPLACEMENTS[domain] = "{} [{}]".format(domain, unicode_domain)

    try:
        coordinator = coordinator_from_config(config)
        success = run_action(coordinator, action, domain)
    except AcertdnsError as e:
        log("Certificate {} for {} failed: {}".format(action, domain, e), error=True)
        sys.exit(1)
    if not success:
        sys.exit(2)
