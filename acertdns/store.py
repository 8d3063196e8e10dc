#!/usr/bin/env python
# -*- coding: utf-8 -*-

# store - certificate bundle persistence
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import collections
import datetime
import os
import re
import stat

from acertdns import tools
from acertdns.errors import FilesystemError
from acertdns.tools import log

# Issued domain key, leaf certificate and issuer certificate (cryptography objects)
CertificateBundle = collections.namedtuple('CertificateBundle', ['key', 'certificate', 'issuer'])
IssuedPaths = collections.namedtuple('IssuedPaths', ['key_path', 'cert_path', 'issuer_cert_path'])

ISSUANCE_ID_FORMAT = '%Y%m%d%H%M%S%f'
BUNDLE_FILE_REGEX = r'^(?P<id>[0-9]{20})_(?P<name>.+)\.(?P<ext>key|pem)$'
KEY_PERMS = stat.S_IRUSR
CERT_PERMS = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH


# @brief determine the file label of an issuer certificate
# @param issuer the issuer certificate
# @param domain_name the sanitized domain name (must not be reused as label)
def issuer_label(issuer, domain_name):
    label = tools.sanitize(tools.get_cert_issuer_name(issuer) or '').strip('_').lower()
    if not label:
        label = 'issuer'
    if label == domain_name.lower():
        label += '_issuer'
    return label


class CertificateStore:
    # @param certificate_dir base directory, each domain gets its own sub-directory
    def __init__(self, certificate_dir):
        self.certificate_dir = certificate_dir

    def domain_dir(self, domain):
        return os.path.join(self.certificate_dir, tools.sanitize(domain, wildcard=True))

    # @brief determine an issuance id not used by any bundle of the directory yet
    @staticmethod
    def _new_issuance_id(directory):
        used = set(name.split('_', 1)[0] for name in os.listdir(directory))
        issuance_id = int(datetime.datetime.now(datetime.timezone.utc).strftime(ISSUANCE_ID_FORMAT))
        while str(issuance_id) in used:
            issuance_id += 1
        return str(issuance_id)

    # @brief persist a certificate bundle
    # @param domain the domain the certificate was issued for
    # @param bundle the CertificateBundle
    # @return IssuedPaths of the written files
    # @note all files are staged under temporary names first and renamed afterwards (key last),
    #       so bundles() never sees a key without its matching certificates
    def write(self, domain, bundle):
        name = tools.sanitize(domain, wildcard=True)
        directory = self.domain_dir(domain)
        try:
            tools.ensure_dir(directory)
            issuance_id = self._new_issuance_id(directory)
        except OSError as e:
            raise FilesystemError("Could not create certificate directory {}: {}".format(directory, e))

        paths = IssuedPaths(
            key_path=os.path.join(directory, "{}_{}.key".format(issuance_id, name)),
            cert_path=os.path.join(directory, "{}_{}.pem".format(issuance_id, name)),
            issuer_cert_path=os.path.join(directory, "{}_{}.pem".format(issuance_id,
                                                                        issuer_label(bundle.issuer, name))),
        )
        try:
            tools.write_files_staged([
                (paths.issuer_cert_path, tools.convert_cert_to_pem_str(bundle.issuer).encode('utf8'), CERT_PERMS),
                (paths.cert_path, tools.convert_cert_to_pem_str(bundle.certificate).encode('utf8'), CERT_PERMS),
                (paths.key_path, tools.convert_key_to_pem_bytes(bundle.key), KEY_PERMS),
            ])
        except OSError as e:
            raise FilesystemError("Could not write certificate bundle for {} to {}: {}".format(domain, directory, e))

        log("Certificate '{}' valid until {} stored in {}".format(tools.get_cert_cn(bundle.certificate),
                                                                 tools.get_cert_valid_until(bundle.certificate),
                                                                 directory))
        return paths

    # @brief list all complete certificate bundles of a domain
    # @return list of IssuedPaths, oldest first
    def bundles(self, domain):
        name = tools.sanitize(domain, wildcard=True)
        directory = self.domain_dir(domain)
        if not os.path.isdir(directory):
            return []

        files = collections.defaultdict(dict)
        for filename in os.listdir(directory):
            match = re.match(BUNDLE_FILE_REGEX, filename)
            if not match:
                continue
            path = os.path.join(directory, filename)
            if match.group('name') == name:
                files[match.group('id')][match.group('ext')] = path
            elif match.group('ext') == 'pem':
                files[match.group('id')]['issuer'] = path

        result = list()
        for issuance_id in sorted(files):
            entry = files[issuance_id]
            if all(k in entry for k in ('key', 'pem', 'issuer')):
                result.append(IssuedPaths(entry['key'], entry['pem'], entry['issuer']))
        return result

    # @brief determine the newest complete certificate bundle of a domain
    # @return IssuedPaths or None
    def latest(self, domain):
        bundles = self.bundles(domain)
        return bundles[-1] if bundles else None
