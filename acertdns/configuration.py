#!/usr/bin/env python
# -*- coding: utf-8 -*-

# config - acertdns config parser
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import argparse
import io
import json
import os

# Configuration defaults to use if not specified otherwise
DEFAULT_CONF_DIR = "/etc/acertdns"
DEFAULT_CONF_FILENAME = "acertdns.conf"
DEFAULT_API = "v2"
DEFAULT_AUTHORITY = "https://acme-v02.api.letsencrypt.org/directory"
DEFAULT_STAGING_AUTHORITY = "https://acme-staging-v02.api.letsencrypt.org/directory"
DEFAULT_TOS_AGREEMENT = "true"
DEFAULT_REQUEST_TIMEOUT = 30  # seconds
DEFAULT_POLL_INTERVAL = 5  # seconds
DEFAULT_POLL_ATTEMPTS = 60
DEFAULT_MAX_RETRIES = 3
DEFAULT_DNS_TIMEOUT = 30  # seconds

ACTIONS = ("create", "verify", "finish")


# @brief update config[name] with value from runtimeconfig>globalconfig>default
def update_config_value(config, name, runtimeconfig, globalconfig, default):
    if runtimeconfig.get(name) is not None:
        config[name] = runtimeconfig[name]
    else:
        config[name] = globalconfig.get(name, default)


# @brief convert an optional config value to int
def _optional_int(value):
    return int(value) if value else None


# @brief parse authority from config
def parse_authority(runtimeconfig, globalconfig):
    authority = {}
    # - API version
    update_config_value(authority, 'api', {}, globalconfig, DEFAULT_API)

    # - Certificate authority (staging or production unless given explicitly)
    update_config_value(authority, 'staging', runtimeconfig, globalconfig, False)
    staging = str(authority.pop('staging')).lower() == 'true'
    update_config_value(authority, 'authority', {}, globalconfig,
                        DEFAULT_STAGING_AUTHORITY if staging else DEFAULT_AUTHORITY)

    # - Certificate authority ToS agreement
    update_config_value(authority, 'authority_tos_agreement', runtimeconfig, globalconfig, DEFAULT_TOS_AGREEMENT)

    # - Network behaviour
    update_config_value(authority, 'request_timeout', {}, globalconfig, DEFAULT_REQUEST_TIMEOUT)
    authority['request_timeout'] = int(authority['request_timeout'])
    update_config_value(authority, 'poll_interval', {}, globalconfig, DEFAULT_POLL_INTERVAL)
    authority['poll_interval'] = float(authority['poll_interval'])
    update_config_value(authority, 'poll_attempts', {}, globalconfig, DEFAULT_POLL_ATTEMPTS)
    authority['poll_attempts'] = int(authority['poll_attempts'])
    update_config_value(authority, 'max_retries', {}, globalconfig, DEFAULT_MAX_RETRIES)
    authority['max_retries'] = int(authority['max_retries'])

    return authority


# @brief build the complete configuration from runtime options and the global configuration file contents
def parse_config(runtimeconfig, globalconfig):
    config = dict()

    # Account identity
    update_config_value(config, 'email', runtimeconfig, globalconfig, None)
    if not config['email']:
        raise ValueError("No account email configured (use --email or set 'email' in the configuration file)")

    # Authority related config options
    config['authority'] = parse_authority(runtimeconfig, globalconfig)

    # Storage locations
    update_config_value(config, 'work_dir', runtimeconfig, globalconfig,
                        runtimeconfig.get('config_dir', DEFAULT_CONF_DIR))
    cert_dir = os.path.join(config['work_dir'], "cert")
    update_config_value(config, 'account_dir', {}, globalconfig, os.path.join(cert_dir, "account"))
    update_config_value(config, 'certificate_dir', {}, globalconfig, os.path.join(cert_dir, "certificate"))
    update_config_value(config, 'cache_dir', {}, globalconfig, os.path.join(config['work_dir'], "cache"))

    # Account key algorithm/length (if key has to be (re-)generated)
    update_config_value(config, 'account_key_algorithm', {}, globalconfig, None)
    update_config_value(config, 'account_key_length', {}, globalconfig, None)
    config['account_key_length'] = _optional_int(config['account_key_length'])

    # SSL key algorithm/length (generated for every certificate)
    update_config_value(config, 'key_algorithm', {}, globalconfig, None)
    update_config_value(config, 'key_length', {}, globalconfig, None)
    config['key_length'] = _optional_int(config['key_length'])

    # DNS verification
    update_config_value(config, 'dns_verify_server', {}, globalconfig, None)
    update_config_value(config, 'dns_timeout', {}, globalconfig, DEFAULT_DNS_TIMEOUT)
    config['dns_timeout'] = int(config['dns_timeout'])

    # Requested phase
    config['action'] = runtimeconfig.get('action')
    config['domain'] = runtimeconfig.get('domain')

    return config


# @brief load the global configuration file (json, falling back to yaml)
def load_config_file(path):
    if not os.path.isfile(path):
        return dict()
    with io.open(path) as config_fd:
        try:
            return json.load(config_fd)
        except ValueError:
            import yaml
            config_fd.seek(0)
            return yaml.safe_load(config_fd) or dict()


# @brief load the configuration from command line and file
# @param args command line arguments (default: sys.argv)
def load(args=None):
    runtimeconfig = dict()
    parser = argparse.ArgumentParser(description="acertdns - Three phase DNS-01 certificate manager using ACME")
    parser.add_argument("-c", "--config-file", nargs="?",
                        help="global configuration file (default='$config_dir/{}')".format(DEFAULT_CONF_FILENAME))
    parser.add_argument("-d", "--config-dir", nargs="?",
                        help="configuration directory (default='{}')".format(DEFAULT_CONF_DIR))
    parser.add_argument("-w", "--work-dir", nargs="?",
                        help="persistent work data directory (default='$config_dir')")
    parser.add_argument("--email", nargs="?",
                        help="account email address (identity of the ACME account)")
    parser.add_argument("--staging", action="store_true", default=None,
                        help="use the staging environment of the certificate authority")
    parser.add_argument("--authority-tos-agreement", "--tos-agreement", "--tos", nargs="?",
                        help="Agree to the authorities Terms of Service (value required depends on authority)")
    parser.add_argument("--domain", nargs="?",
                        help="domain to work on (prompted if omitted)")
    parser.add_argument("--action", nargs="?", choices=ACTIONS,
                        help="phase to run: create the order, verify the dns record or finish the order "
                             "(prompted if omitted)")
    args = parser.parse_args(args)

    # Determine configuration directory
    if args.config_dir:
        config_dir = args.config_dir
    else:
        config_dir = DEFAULT_CONF_DIR

    # Determine global configuration file
    if args.config_file:
        global_config_file = args.config_file
    else:
        global_config_file = os.path.join(config_dir, DEFAULT_CONF_FILENAME)

    # Runtime configuration: Get from command-line options
    runtimeconfig['config_dir'] = config_dir
    runtimeconfig['work_dir'] = args.work_dir
    runtimeconfig['email'] = args.email
    runtimeconfig['staging'] = args.staging
    runtimeconfig['authority_tos_agreement'] = args.authority_tos_agreement
    runtimeconfig['domain'] = args.domain
    runtimeconfig['action'] = args.action

    # Global configuration: Load from file
    globalconfig = load_config_file(global_config_file)

    return parse_config(runtimeconfig, globalconfig)
