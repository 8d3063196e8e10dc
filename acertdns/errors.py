#!/usr/bin/env python
# -*- coding: utf-8 -*-

# errors - exception types raised by acertdns
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE


class AcertdnsError(Exception):
    pass


# Account key material is missing, unreadable or corrupt
class AccountKeyError(AcertdnsError):
    pass


# No pending challenge has been cached for the domain (create was never run, or the entry was consumed)
class ChallengeNotFoundError(AcertdnsError):
    pass


# Certificate files or directories could not be written
class FilesystemError(AcertdnsError):
    pass


# The challenge cache could not be read or written
class CacheError(AcertdnsError):
    pass


class ProtocolError(AcertdnsError):
    # @param reason human readable description of what failed
    # @param status HTTP status code reported by the authority (if any)
    # @param type problem document type (e.g. urn:ietf:params:acme:error:rateLimited)
    # @param detail problem document detail as reported by the authority
    def __init__(self, reason, status=None, type=None, detail=None):
        self.reason = reason
        self.status = status
        self.type = type
        self.detail = detail
        message = reason
        if status is not None:
            message += " ({})".format(status)
        if detail:
            message += ": {}".format(detail)
        AcertdnsError.__init__(self, message)

    # @brief whether the failed request may succeed if it is sent again later
    @property
    def retryable(self):
        return False


# The authority rejected a request as malformed or unauthorized (4xx)
class ClientError(ProtocolError):
    pass


# The authority failed to handle a request (5xx)
class ServerError(ProtocolError):
    @property
    def retryable(self):
        return True


class RateLimitedError(ProtocolError):
    # @param retry_after seconds to wait before retrying as hinted by the authority
    def __init__(self, reason, status=None, type=None, detail=None, retry_after=None):
        ProtocolError.__init__(self, reason, status, type, detail)
        self.retry_after = retry_after

    @property
    def retryable(self):
        return True


# The authorization reached the terminal state invalid, a new order has to be created
class AuthorizationInvalidError(ProtocolError):
    pass


# Polling the authority did not reach a terminal state in time
class ProtocolTimeoutError(ProtocolError):
    @property
    def retryable(self):
        return True


# The authority could not be reached (connection failure or socket timeout)
class TransportError(ProtocolError):
    @property
    def retryable(self):
        return True
