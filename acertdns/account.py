#!/usr/bin/env python
# -*- coding: utf-8 -*-

# account - acme account key handling
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import collections
import io
import os
import stat

from cryptography.exceptions import UnsupportedAlgorithm

from acertdns import tools
from acertdns.errors import AccountKeyError
from acertdns.tools import log

KeyPair = collections.namedtuple('KeyPair', ['private_key', 'public_key'])

PRIVATE_KEY_PERMS = stat.S_IRUSR
PUBLIC_KEY_PERMS = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH


class AccountIdentity:
    # @param account_dir directory holding the account key files
    # @param key_algorithm algorithm used if a new key has to be generated
    # @param key_length key length used if a new key has to be generated
    def __init__(self, account_dir, key_algorithm=None, key_length=None):
        self.account_dir = account_dir
        self.key_algorithm = key_algorithm
        self.key_length = key_length

    # @brief determine the key file locations for an identity
    # @return tuple of (public key path, private key path)
    def key_paths(self, identity):
        name = tools.sanitize(identity)
        return (os.path.join(self.account_dir, "{}.public.pem".format(name)),
                os.path.join(self.account_dir, "{}.private.pem".format(name)))

    # @brief load the account key pair of an identity or create it if no key material exists yet
    # @param identity the operator identity (email address)
    # @return the KeyPair
    def load_or_create(self, identity):
        public_path, private_path = self.key_paths(identity)
        if not os.path.exists(public_path) and not os.path.exists(private_path):
            return self._create(public_path, private_path)

        log("Reading account key from {}".format(private_path))
        try:
            private_key = tools.convert_pem_bytes_to_key(self._read(private_path))
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise AccountKeyError("Account key {} is not a valid private key: {}".format(private_path, e))
        try:
            public_key = tools.convert_pem_bytes_to_public_key(self._read(public_path))
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise AccountKeyError("Account key {} is not a valid public key: {}".format(public_path, e))
        if tools.convert_public_key_to_pem_bytes(private_key.public_key()) != \
                tools.convert_public_key_to_pem_bytes(public_key):
            raise AccountKeyError("Account keys {} and {} do not belong together".format(public_path, private_path))
        return KeyPair(private_key, public_key)

    def _create(self, public_path, private_path):
        log("Account key not found at '{0}'. Creating key.".format(private_path))
        try:
            private_key = tools.new_ssl_key(self.key_algorithm, self.key_length)
        except ValueError as e:
            raise AccountKeyError("Could not generate account key: {}".format(e))
        try:
            tools.ensure_dir(self.account_dir)
            # the private half is renamed into place last
            tools.write_files_staged([
                (public_path, tools.convert_public_key_to_pem_bytes(private_key.public_key()), PUBLIC_KEY_PERMS),
                (private_path, tools.convert_key_to_pem_bytes(private_key), PRIVATE_KEY_PERMS),
            ])
        except OSError as e:
            raise AccountKeyError("Could not write account key to {}: {}".format(self.account_dir, e))
        return KeyPair(private_key, private_key.public_key())

    @staticmethod
    def _read(path):
        try:
            with io.open(path, 'rb') as f:
                return f.read()
        except IOError as e:
            raise AccountKeyError("Account key {} could not be read: {}".format(path, e))
