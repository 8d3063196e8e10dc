#!/usr/bin/env python
# -*- coding: utf-8 -*-

# modes - challenge handler modes package
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import importlib

SUPPORTED_CHALLENGE_TYPES = ("dns-01",)


# @brief create the challenge handler for a challenge type
# @param settings the configuration options
# @param challenge_type the acme challenge type (only dns-01 is available)
def challenge_handler(settings, challenge_type="dns-01"):
    if challenge_type not in SUPPORTED_CHALLENGE_TYPES:
        raise ValueError("Unsupported challenge type: {}".format(challenge_type))
    handler_module = importlib.import_module("acertdns.modes.{0}".format(challenge_type.replace('-', '')))
    handler_class = getattr(handler_module, "ChallengeHandler")
    return handler_class(settings)
