#!/usr/bin/env python
# -*- coding: utf-8 -*-

# abstract - abstract base classes for challenge handlers
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE


class AbstractChallengeHandler:
    def __init__(self, config):
        self.config = config

    @staticmethod
    def get_challenge_type():
        raise NotImplementedError

    # @brief describe what the operator has to publish for a challenge
    # @return a dict describing the record/resource
    def describe_challenge(self, domain, thumbprint, token):
        raise NotImplementedError

    # @brief check locally whether the published resource matches the challenge
    # @return True if the challenge is expected to pass, False otherwise
    def verify_challenge(self, domain, thumbprint, token):
        raise NotImplementedError
