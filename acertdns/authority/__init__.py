#!/usr/bin/env python
# -*- coding: utf-8 -*-

# authority - authority api package
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import importlib

DEFAULT_API = "v2"


# @brief create a suitable authority for the given settings
# @param settings the authority configuration options
# @param key the account private key
def authority(settings, key):
    authority_module = importlib.import_module("acertdns.authority.{0}".format(settings.get("api", DEFAULT_API)))
    authority_class = getattr(authority_module, "ACMEAuthority")
    return authority_class(settings, key)
