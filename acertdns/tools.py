#!/usr/bin/env python
# -*- coding: utf-8 -*-

# acertdns - various support functions
# Copyright (c) Markus Hauschild & David Klaftenegger, 2016.
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import base64
import io
import json
import os
import re
import sys
import tempfile
import traceback
from urllib.request import urlopen, Request

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, ed448, padding
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.utils import int_to_bytes
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtensionOID, NameOID

# Default timeout (seconds) for any url request
DEFAULT_URL_TIMEOUT = 30

PEM_CERT_REGEX = r'-----BEGIN CERTIFICATE-----[^\-]+-----END CERTIFICATE-----'

# Replacements applied to any log message (e.g. idna name -> "idna [unicode]")
LOG_REPLACEMENTS = dict()


# @brief a simple, portable indent function
def indent(text, spaces=0):
    ind = ' ' * spaces
    return os.linesep.join(ind + line for line in text.splitlines())


# @brief wrapper for log output
def log(msg, exc=None, error=False, warning=False):
    if error:
        prefix = "Error: "
    elif warning:
        prefix = "Warning: "
    else:
        prefix = ""

    for search, replacement in LOG_REPLACEMENTS.items():
        msg = msg.replace(search, replacement)

    output = prefix + msg
    if exc:
        formatted_exc = traceback.format_exception(type(exc), exc, exc.__traceback__)
        output += os.linesep + indent(''.join(formatted_exc), len(prefix))

    if error or warning:
        sys.stderr.write(output + os.linesep)
        sys.stderr.flush()  # force flush buffers after message was written for immediate display
    else:
        sys.stdout.write(output + os.linesep)
        sys.stdout.flush()  # force flush buffers after message was written for immediate display


# @brief wrapper for downloading an url
def get_url(url, data=None, headers=None, timeout=DEFAULT_URL_TIMEOUT):
    return urlopen(Request(url, data=data, headers={} if headers is None else headers), timeout=timeout)


# @brief replace every run of non-alphanumeric characters with a single underscore
# @param value the string to sanitize (domain name, email address, ...)
# @param wildcard replace a leading '*' with '_wildcard' first (keeps wildcard names apart from their base domain)
# @return a filesystem-safe representation of value
def sanitize(value, wildcard=False):
    if wildcard and value.startswith('*'):
        value = '_wildcard' + value[1:]
    return re.sub(r'[^a-zA-Z0-9]+', '_', value)


# @brief create a directory (and its parents) unless it already exists
# @note tolerates a concurrent creator
def ensure_dir(path, mode=0o700):
    os.makedirs(path, mode, exist_ok=True)
    return path


# @brief write several files so that either all or none of them end up at their final path
# @param files list of (path, data, perms) tuples, renamed into place in the given order
# @note each file is staged as a hidden temporary file next to its destination, permissions are set before any
#       data is written
# @raise OSError after removing everything that was written
def write_files_staged(files):
    staged = list()
    committed = list()
    try:
        for path, data, perms in files:
            fd, tmp_path = tempfile.mkstemp(prefix='.', suffix='.tmp', dir=os.path.dirname(path))
            staged.append(tmp_path)
            with io.open(fd, 'wb') as f:
                os.chmod(tmp_path, perms)
                f.write(data)
        for tmp_path, (path, _, _) in zip(staged, files):
            os.replace(tmp_path, path)
            committed.append(path)
    except OSError:
        for path in staged + committed:
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError:
                log('Could not remove partially written file {}'.format(path), warning=True)
        raise


# @brief create a certificate signing request
# @param domain the (single) domain name the certificate should be valid for
# @param key the key to use with the certificate
# @return the CSR in cryptography format
def new_cert_request(domain, key):
    req = x509.CertificateSigningRequestBuilder()
    req = req.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
    req = req.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return req.sign(key, None, default_backend())
    return req.sign(key, hashes.SHA256(), default_backend())


# @brief generate a new ssl key
# @param key_algo one of rsa (default), ec, ed25519, ed448
# @param key_size key length (rsa) or curve size (ec)
def new_ssl_key(key_algo=None, key_size=None):
    if not key_algo or key_algo.lower() == 'rsa':
        if not key_size:
            key_size = 4096
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size, backend=default_backend())
    elif key_algo.lower() == 'ec':
        if not key_size or key_size == 256:
            key_curve = ec.SECP256R1
        elif key_size == 384:
            key_curve = ec.SECP384R1
        elif key_size == 521:
            key_curve = ec.SECP521R1
        else:
            raise ValueError("Unsupported EC curve size parameter: {}".format(key_size))
        return ec.generate_private_key(curve=key_curve(), backend=default_backend())
    elif key_algo.lower() == 'ed25519':
        return ed25519.Ed25519PrivateKey.generate()
    elif key_algo.lower() == 'ed448':
        return ed448.Ed448PrivateKey.generate()
    else:
        raise ValueError("Unsupported key algorithm: {}".format(key_algo))


# @brief serialize a private key to PEM
def convert_key_to_pem_bytes(key):
    if isinstance(key, rsa.RSAPrivateKey):
        key_format = serialization.PrivateFormat.TraditionalOpenSSL
    else:
        key_format = serialization.PrivateFormat.PKCS8
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=key_format,
        encryption_algorithm=serialization.NoEncryption(),
    )


# @brief serialize a public key to PEM
def convert_public_key_to_pem_bytes(key):
    return key.public_bytes(encoding=serialization.Encoding.PEM,
                            format=serialization.PublicFormat.SubjectPublicKeyInfo)


# @brief load a private key from PEM bytes
def convert_pem_bytes_to_key(data):
    return serialization.load_pem_private_key(data, None, default_backend())


# @brief load a public key from PEM bytes
def convert_pem_bytes_to_public_key(data):
    return serialization.load_pem_public_key(data, default_backend())


# @brief download the issuer ca for a given certificate
# @param cert certificate data
# @returns ca certificate data
def download_issuer_ca(cert, timeout=DEFAULT_URL_TIMEOUT):
    try:
        aia = cert.extensions.get_extension_for_oid(ExtensionOID.AUTHORITY_INFORMATION_ACCESS)
    except x509.ExtensionNotFound:
        log("Certificate has no authority information access extension: {}".format(get_cert_cn(cert)), error=True)
        return None
    ca_issuers = None
    for data in aia.value:
        if data.access_method == AuthorityInformationAccessOID.CA_ISSUERS:
            ca_issuers = data.access_location.value
            break

    if not ca_issuers:
        log("Could not determine issuer CA for given certificate: {}".format(get_cert_cn(cert)), error=True)
        return None

    log("Downloading CA certificate from {}".format(ca_issuers))
    resp = get_url(ca_issuers, timeout=timeout)
    code = resp.getcode()
    if code >= 400:
        log("Could not download issuer CA (error {}) for given certificate: {}".format(code, get_cert_cn(cert)),
            error=True)
        return None

    data = resp.read()
    if data.startswith(b'-----BEGIN'):
        return x509.load_pem_x509_certificate(data, default_backend())
    return x509.load_der_x509_certificate(data, default_backend())


# @brief determine certificate cn
def get_cert_cn(cert):
    return "CN={}".format(cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value)


# @brief determine certificate end of validity
def get_cert_valid_until(cert):
    return getattr(cert, 'not_valid_after_utc', None) or cert.not_valid_after


# @brief determine a short name for the organization (or cn) issuing a certificate
def get_cert_issuer_name(cert):
    for oid in (NameOID.ORGANIZATION_NAME, NameOID.COMMON_NAME):
        attributes = cert.subject.get_attributes_for_oid(oid)
        if attributes:
            return attributes[0].value
    return None


# @brief convert certificate to PEM format
# @param cert certificate object in cryptography format
# @return the certificate in PEM format
def convert_cert_to_pem_str(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode('utf8')


# @brief load a PEM certificate from str
def convert_pem_str_to_cert(certdata):
    return x509.load_pem_x509_certificate(certdata.encode('utf8'), default_backend())


# @brief split a PEM chain into its certificates (leaf first)
def split_pem_chain(chaindata):
    return [convert_pem_str_to_cert(pem) for pem in re.findall(PEM_CERT_REGEX, chaindata, re.DOTALL)]


# @brief serialize cert/csr to DER bytes
def convert_cert_to_der_bytes(data):
    return data.public_bytes(serialization.Encoding.DER)


# @brief determine key signing algorithm and jwk data
# @return key algorithm, signature algorithm, key numbers as a dict
def get_key_alg_and_jwk(key):
    if isinstance(key, rsa.RSAPrivateKey):
        # See https://tools.ietf.org/html/rfc7518#section-6.3
        numbers = key.public_key().public_numbers()
        return "RS256", {"kty": "RSA",
                         "e": bytes_to_base64url(int_to_bytes(numbers.e)),
                         "n": bytes_to_base64url(int_to_bytes(numbers.n))}
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        # See https://tools.ietf.org/html/rfc7518#section-6.2
        numbers = key.public_key().public_numbers()
        if isinstance(numbers.curve, ec.SECP256R1):
            alg = 'ES256'
            crv = 'P-256'
        elif isinstance(numbers.curve, ec.SECP384R1):
            alg = 'ES384'
            crv = 'P-384'
        elif isinstance(numbers.curve, ec.SECP521R1):
            alg = 'ES512'
            crv = 'P-521'
        else:
            raise ValueError("Unsupported EC curve in key: {}".format(key))
        full_octets = (int(crv[2:]) + 7) // 8
        return alg, {"kty": "EC", "crv": crv,
                     "x": bytes_to_base64url(int_to_bytes(numbers.x, full_octets)),
                     "y": bytes_to_base64url(int_to_bytes(numbers.y, full_octets))}
    elif isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        # See https://tools.ietf.org/html/rfc8037#appendix-A.2
        crv = "Ed25519" if isinstance(key, ed25519.Ed25519PrivateKey) else "Ed448"
        return "EdDSA", {"kty": "OKP", "crv": crv,
                         "x": bytes_to_base64url(key.public_key().public_bytes(encoding=serialization.Encoding.Raw,
                                                                               format=serialization.PublicFormat.Raw)
                                                 )}
    else:
        raise ValueError("Unsupported key: {}".format(key))


# @brief determine the jwk thumbprint of a key (see https://tools.ietf.org/html/rfc7638)
def get_jwk_thumbprint(key):
    _, jwk = get_key_alg_and_jwk(key)
    return bytes_to_base64url(hash_of_str(json.dumps(jwk, sort_keys=True, separators=(',', ':'))))


# @brief sign string with key
def signature_of_str(key, string):
    alg, _ = get_key_alg_and_jwk(key)
    data = string.encode('utf8')
    if alg == 'RS256':
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    elif alg.startswith('ES'):
        full_octets = (int(alg[2:]) + 7) // 8
        if alg == 'ES256':
            der_sig = key.sign(data, ec.ECDSA(hashes.SHA256()))
        elif alg == 'ES384':
            der_sig = key.sign(data, ec.ECDSA(hashes.SHA384()))
        elif alg == 'ES512':
            der_sig = key.sign(data, ec.ECDSA(hashes.SHA512()))
        else:
            raise ValueError("Unsupported EC signature algorithm: {}".format(alg))
        # convert DER signature to RAW format (https://tools.ietf.org/html/rfc7518#section-3.4)
        r, s = decode_dss_signature(der_sig)
        return int_to_bytes(r, full_octets) + int_to_bytes(s, full_octets)
    elif alg == 'EdDSA':
        return key.sign(data)
    else:
        raise ValueError("Unsupported signature algorithm: {}".format(alg))


# @brief hash a string
def hash_of_str(string):
    account_hash = hashes.Hash(hashes.SHA256(), backend=default_backend())
    account_hash.update(string.encode('utf8'))
    return account_hash.finalize()


# @brief helper function to base64 encode for JSON objects
# @param b the byte-string to encode
# @return the encoded string
def bytes_to_base64url(b):
    return base64.urlsafe_b64encode(b).decode('utf8').replace("=", "")


# @brief convert domain list to idna representation (if applicable)
def idna_convert(domainlist):
    if any(ord(c) >= 128 for c in ''.join(domainlist)):
        try:
            domaintranslation = list()
            for domain in domainlist:
                if any(ord(c) >= 128 for c in domain):
                    # Translate IDNA domain name from a unicode domain (handle wildcards separately)
                    if domain.startswith('*.'):
                        idna_domain = "*.{}".format(domain[2:].encode('idna').decode('ascii'))
                    else:
                        idna_domain = domain.encode('idna').decode('ascii')
                    result = idna_domain, domain
                else:
                    result = domain, domain
                domaintranslation.append(result)
            return domaintranslation
        except UnicodeError as e:
            log("Unicode domain(s) found but IDNA names could not be translated due to error: {}".format(e), error=True)
    return [(x, x) for x in domainlist]
