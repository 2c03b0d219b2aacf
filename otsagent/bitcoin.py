# Copyright (C) 2016-2026 The OpenTimestamps developers
#
# This file is part of the OpenTimestamps proof tools.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of the OpenTimestamps proof tools including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

"""Bitcoin block header backends

A backend answers one question: what are the merkle root and time of the block
at a given height? Everything else about verification is backend agnostic.
"""

import collections
import http.client
import itertools
import logging
import socket
import ssl

import bitcoin.rpc
import requests
import simplejson
from bitcoin.core import CBlockHeader, b2lx, b2x
from bitcoin.core.serialize import SerializationError

BlockInfo = collections.namedtuple('BlockInfo', ['merkle_root', 'block_time'])
"""What verification needs from a block

merkle_root is in internal byte order, the same order commitments are
computed in; block_time is the header's nTime, in seconds since the epoch.
"""


class BackendError(Exception):
    """A backend couldn't answer, or answered with garbage"""


class BlockNotFoundError(BackendError):
    """No block at that height, usually because it isn't mined yet"""


class BackendConflictError(BackendError):
    """Two backends disagree about the same block"""


def deserialize_block_header(raw_header):
    """Parse an 80 byte serialized block header

    Raises BackendError if the header is malformed.
    """
    try:
        return CBlockHeader.deserialize(raw_header)
    except SerializationError as exp:
        raise BackendError("Invalid block header %s: %r" % (b2x(raw_header), exp))


class BlockBackend:
    """Source of Bitcoin block headers, looked up by height"""

    def resolve_block(self, height):
        """Return the BlockInfo for the block at height

        Raises BlockNotFoundError if there is no such block, BackendError for
        everything else that goes wrong.
        """
        raise NotImplementedError


class BitcoinCoreBackend(BlockBackend):
    """Local Bitcoin Core node, over JSON-RPC"""

    def __init__(self, service_url=None, btc_conf_file=None, timeout=30, proxy=None):
        self.service_url = service_url
        self.btc_conf_file = btc_conf_file
        self.timeout = timeout
        self.__proxy = proxy

    @property
    def proxy(self):
        # Created on first use: reading the node's config and cookie can fail
        if self.__proxy is None:
            try:
                self.__proxy = bitcoin.rpc.Proxy(service_url=self.service_url,
                                                 btc_conf_file=self.btc_conf_file,
                                                 timeout=self.timeout)
            except (OSError, ValueError) as exp:
                raise BackendError("Could not connect to Bitcoin Core: %r" % exp)
        return self.__proxy

    def __repr__(self):
        return 'BitcoinCoreBackend(%r)' % self.service_url

    def resolve_block(self, height):
        proxy = self.proxy
        try:
            block_hash = proxy.getblockhash(height)
            block_header = proxy.getblockheader(block_hash)

        except IndexError as exp:
            raise BlockNotFoundError("Bitcoin Core has no block at height %d: %s" % (height, exp))

        except (bitcoin.rpc.JSONRPCError, OSError, http.client.HTTPException) as exp:
            raise BackendError("Bitcoin Core RPC failed for block %d: %r" % (height, exp))

        logging.debug("Bitcoin Core: block %d is %s" % (height, b2lx(block_hash)))
        return BlockInfo(block_header.hashMerkleRoot, block_header.nTime)


class EsploraBackend(BlockBackend):
    """Esplora block explorer REST API"""

    DEFAULT_URLS = {
        'mainnet': 'https://blockstream.info/api',
        'testnet': 'https://blockstream.info/testnet/api',
    }

    def __init__(self, url=DEFAULT_URLS['mainnet'], timeout=30, session=None):
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def __repr__(self):
        return 'EsploraBackend(%r)' % self.url

    def __get(self, path, height):
        url = self.url + path
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exp:
            raise BackendError("%s: %r" % (url, exp))

        if r.status_code == 404:
            raise BlockNotFoundError("%s: block %d not found" % (self.url, height))

        elif r.status_code != 200:
            raise BackendError("%s: unexpected HTTP status %d" % (url, r.status_code))

        return r.text.strip()

    def resolve_block(self, height):
        block_hash = self.__get('/block-height/%d' % height, height)
        hex_header = self.__get('/block/%s/header' % block_hash, height)

        try:
            raw_header = bytes.fromhex(hex_header)
        except ValueError:
            raise BackendError("%s: block %d header isn't hex" % (self.url, height))

        block_header = deserialize_block_header(raw_header)
        if b2lx(block_header.GetHash()) != block_hash.lower():
            raise BackendError("%s: header for block %d doesn't hash to %s" % (self.url, height, block_hash))

        logging.debug("Esplora: block %d is %s" % (height, block_hash))
        return BlockInfo(block_header.hashMerkleRoot, block_header.nTime)


class ElectrumBackend(BlockBackend):
    """Electrum protocol server

    Each lookup is a single newline-delimited JSON-RPC request over a fresh
    TCP (optionally TLS) connection.
    """

    DEFAULT_SERVERS = {
        'mainnet': 'electrum.blockstream.info:50001:t',
        'testnet': 'electrum.blockstream.info:60001:t',
    }

    MAX_RESPONSE_LENGTH = 65536

    def __init__(self, host, port, use_ssl=True, timeout=30, ssl_context=None):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.ssl_context = ssl_context
        self.__ids = itertools.count()

    @classmethod
    def from_server_string(cls, server, timeout=30):
        """Create from 'host:port[:s|t]'; s is TLS (the default), t plain TCP"""
        parts = server.rsplit(':', 2)
        if len(parts) == 3 and parts[2] in ('s', 't'):
            host, port, protocol = parts
        elif len(parts) >= 2:
            host, port = server.rsplit(':', 1)
            protocol = 's'
        else:
            raise ValueError("Electrum server must be host:port[:s|t]; got %r" % server)

        try:
            port = int(port)
        except ValueError:
            raise ValueError("Invalid Electrum server port %r" % port)

        return cls(host, port, use_ssl=(protocol == 's'), timeout=timeout)

    def __repr__(self):
        return 'ElectrumBackend(%r, %d, use_ssl=%r)' % (self.host, self.port, self.use_ssl)

    def call(self, method, *params):
        request = {'jsonrpc': '2.0', 'id': next(self.__ids), 'method': method, 'params': list(params)}

        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as raw_sock:
                sock = raw_sock
                if self.use_ssl:
                    ssl_context = self.ssl_context or ssl.create_default_context()
                    sock = ssl_context.wrap_socket(raw_sock, server_hostname=self.host)

                with sock:
                    sock.sendall(simplejson.dumps(request).encode('utf8') + b'\n')
                    with sock.makefile('rb') as fd:
                        line = fd.readline(self.MAX_RESPONSE_LENGTH)

        except OSError as exp:
            raise BackendError("Electrum server %s:%d: %r" % (self.host, self.port, exp))

        try:
            response = simplejson.loads(line.decode('utf8'))
        except (UnicodeDecodeError, simplejson.JSONDecodeError) as exp:
            raise BackendError("Electrum server %s:%d sent an invalid response: %r" % (self.host, self.port, exp))

        if not isinstance(response, dict):
            raise BackendError("Electrum server %s:%d sent an invalid response" % (self.host, self.port))

        error = response.get('error')
        if error:
            message = error.get('message', '') if isinstance(error, dict) else str(error)
            self._raise_for_error(method, params, message)

        return response.get('result')

    def _raise_for_error(self, method, params, message):
        if 'out of range' in message or 'not found' in message:
            raise BlockNotFoundError("Electrum server %s:%d: %s" % (self.host, self.port, message))
        raise BackendError("Electrum server %s:%d: %s%r failed: %s" % (self.host, self.port, method, params, message))

    def resolve_block(self, height):
        hex_header = self.call('blockchain.block.header', height)
        if not isinstance(hex_header, str):
            raise BackendError("Electrum server %s:%d: expected hex header for block %d; got %r" %
                               (self.host, self.port, height, hex_header))

        try:
            raw_header = bytes.fromhex(hex_header)
        except ValueError:
            raise BackendError("Electrum server %s:%d: block %d header isn't hex" % (self.host, self.port, height))

        block_header = deserialize_block_header(raw_header)

        logging.debug("Electrum: block %d is %s" % (height, b2lx(block_header.GetHash())))
        return BlockInfo(block_header.hashMerkleRoot, block_header.nTime)


class CachingBackend(BlockBackend):
    """Remembers answers per height

    Only successful lookups are cached; errors are retried on the next call.
    """

    def __init__(self, backend):
        self.backend = backend
        self.__cache = {}

    def __repr__(self):
        return 'CachingBackend(%r)' % self.backend

    def resolve_block(self, height):
        try:
            return self.__cache[height]
        except KeyError:
            block_info = self.backend.resolve_block(height)
            self.__cache[height] = block_info
            return block_info


class CrossCheckBackend(BlockBackend):
    """Asks every backend, and insists they all agree

    No backend is preferred over another: if any two disagree about the merkle
    root or the time of a block, BackendConflictError is raised. Any backend
    failing fails the lookup.
    """

    def __init__(self, backends):
        backends = list(backends)
        if not backends:
            raise ValueError("Need at least one backend")
        self.backends = backends

    def __repr__(self):
        return 'CrossCheckBackend(%r)' % self.backends

    def resolve_block(self, height):
        first_backend = self.backends[0]
        first_info = first_backend.resolve_block(height)

        for backend in self.backends[1:]:
            block_info = backend.resolve_block(height)
            if block_info != first_info:
                raise BackendConflictError(
                    "Backends disagree about block %d: %r says merkle root %s time %d, %r says merkle root %s time %d" %
                    (height,
                     first_backend, b2lx(first_info.merkle_root), first_info.block_time,
                     backend, b2lx(block_info.merkle_root), block_info.block_time))

        return first_info
