#!/usr/bin/env python
# -*- coding: utf-8 -*-

# cache - persistence of pending challenges between invocations
# Copyright (c) Rudolf Mayerhofer, 2019.
# available under the ISC license, see LICENSE

import contextlib
import copy
import io
import json
import os
import sys
import tempfile
import threading

from acertdns import tools
from acertdns.errors import CacheError
from acertdns.tools import log

try:
    import fcntl
except ImportError:
    # Warnings will be reported upon usage below
    pass


class AbstractChallengeCache:
    # @brief store a challenge for key, replacing any previous one
    def put(self, key, challenge):
        raise NotImplementedError

    # @brief retrieve the challenge stored for key
    # @return the challenge dict or None if absent
    def get(self, key):
        raise NotImplementedError

    # @brief remove the challenge stored for key (no error if absent)
    def forget(self, key):
        raise NotImplementedError

    # @brief context manager serializing all operations on key
    def lock(self, key):
        raise NotImplementedError


class MemoryChallengeCache(AbstractChallengeCache):
    def __init__(self):
        self._entries = dict()
        self._locks = dict()
        self._guard = threading.Lock()

    def put(self, key, challenge):
        self._entries[key] = copy.deepcopy(challenge)

    def get(self, key):
        return copy.deepcopy(self._entries.get(key))

    def forget(self, key):
        self._entries.pop(key, None)

    @contextlib.contextmanager
    def lock(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class FileChallengeCache(MemoryChallengeCache):
    # @param cache_dir directory holding one json file per cached challenge
    def __init__(self, cache_dir):
        MemoryChallengeCache.__init__(self)
        self.cache_dir = cache_dir

    def _path(self, key, extension):
        return os.path.join(self.cache_dir, "{}.{}".format(tools.sanitize(key), extension))

    def put(self, key, challenge):
        tools.ensure_dir(self.cache_dir)
        fd, tmp_path = tempfile.mkstemp(prefix='.', suffix='.tmp', dir=self.cache_dir)
        try:
            with io.open(fd, 'w') as f:
                json.dump(challenge, f, sort_keys=True, indent=2)
            os.replace(tmp_path, self._path(key, 'json'))
        except (IOError, TypeError, ValueError) as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise CacheError("Could not store challenge for {}: {}".format(key, e))

    def get(self, key):
        path = self._path(key, 'json')
        try:
            with io.open(path) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (IOError, ValueError) as e:
            raise CacheError("Could not read cached challenge {}: {}".format(path, e))

    def forget(self, key):
        try:
            os.remove(self._path(key, 'json'))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CacheError("Could not remove cached challenge for {}: {}".format(key, e))

    @contextlib.contextmanager
    def lock(self, key):
        # serialize threads of this process first, flock then takes care of other processes
        with MemoryChallengeCache.lock(self, key):
            if 'fcntl' not in sys.modules:
                log('Cross-process locking unavailable on this platform', warning=True)
                yield
                return
            tools.ensure_dir(self.cache_dir)
            with io.open(self._path(key, 'lock'), 'a') as lock_fd:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)
