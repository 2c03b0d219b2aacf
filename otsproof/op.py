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

"""Timestamp proof operations

Operations are the edges of a timestamp tree: each one is a pure function from
one message to the next. The set of operations is closed; a proof containing
an operation we don't know can't be safely replayed, so unknown tags are
rejected at deserialization time.
"""

import binascii
import functools
import hashlib

from bitcoin.core import b2x
from Cryptodome.Hash import RIPEMD160, keccak

from otsproof.serialize import DeserializationError


class MsgValueError(ValueError):
    """Raised when an operation can't be applied to the specified message

    For example, because OpHexlify doubles the size of its input, we restrict
    the size of the message it can be applied to to avoid running out of
    memory during timestamp validation.
    """


class OpArgValueError(ValueError):
    """Raised when an operation argument has an invalid value

    For instance, if OpAppend/OpPrepend are used with an empty argument.
    """


def register_op(cls):
    """Decorator for concrete Op subclasses

    Adds the class to the tag registry so Op.deserialize() can find it.
    """
    assert isinstance(cls.TAG, bytes) and len(cls.TAG) == 1
    if cls.TAG in Op.SUBCLS_BY_TAG:
        raise ValueError('Op tag 0x%s already used by %r' %
                         (b2x(cls.TAG), Op.SUBCLS_BY_TAG[cls.TAG]))
    Op.SUBCLS_BY_TAG[cls.TAG] = cls
    return cls


@functools.total_ordering
class Op:
    """Timestamp proof operation

    Operations are immutable, hashable and ordered, so they can be used as
    keys when building the forks of a timestamp.
    """
    __slots__ = ()

    SUBCLS_BY_TAG = {}

    TAG = None
    TAG_NAME = None

    MAX_RESULT_LENGTH = 4096
    """Maximum length of an Op result

    For a verifier, this limit is what limits the maximum amount of memory you
    need at any one time to verify a particular timestamp path; while verifying
    a particular commitment operation path previously calculated results can
    be discarded.

    Of course, if everything was a merkle tree you never need to append/prepend
    anything near 4KiB of data; 64 bytes would be plenty even with SHA512. The
    main need for this is compatibility with existing systems like Bitcoin
    timestamps and Certificate Transparency servers. While the pathological
    limits required by both are quite large - 1MB and 16MiB respectively - 4KiB
    is perfectly adequate in both cases for more reasonable usage.

    Op subclasses should set this limit even lower if doing so is appropriate
    for them.
    """

    MAX_MSG_LENGTH = 4096
    """Maximum length of the message an Op can be applied too

    Similar to the result length limit, this limit gives implementations a sane
    constraint to work with; the maximum result-length limit implicitly
    constrains maximum message length anyway.
    """

    def _key(self):
        return (self.TAG,)

    def __eq__(self, other):
        if isinstance(other, Op):
            return self._key() == other._key()
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Op):
            return self._key() < other._key()
        return NotImplemented

    def __hash__(self):
        return hash(self._key())

    def _do_op_call(self, msg):
        raise NotImplementedError

    def __call__(self, msg):
        """Apply the operation to a message

        Raises MsgValueError if the message value is invalid, such as it being
        too long, or it causing the result to be too long.
        """
        if not isinstance(msg, bytes):
            raise TypeError("Expected message to be bytes; got %r" % msg.__class__)

        if len(msg) > self.MAX_MSG_LENGTH:
            raise MsgValueError("Message too long; %d > %d" % (len(msg), self.MAX_MSG_LENGTH))

        r = self._do_op_call(msg)

        # No operation should allow the result length to exceed the maximum
        assert len(r) <= self.MAX_RESULT_LENGTH
        return r

    def serialize(self, ctx):
        ctx.write_bytes(self.TAG)

    @classmethod
    def deserialize_from_tag(cls, ctx, tag):
        try:
            subcls = cls.SUBCLS_BY_TAG[tag]
        except KeyError:
            raise DeserializationError("Unknown operation tag 0x%s" % b2x(tag))
        return subcls.deserialize_from_tag(ctx, tag)

    @classmethod
    def deserialize(cls, ctx):
        tag = ctx.read_bytes(1)
        return cls.deserialize_from_tag(ctx, tag)


class UnaryOp(Op):
    """Operations that act on a single message"""
    __slots__ = ()

    def __repr__(self):
        return '%s()' % self.__class__.__name__

    def __str__(self):
        return '%s' % self.TAG_NAME

    @classmethod
    def deserialize_from_tag(cls, ctx, tag):
        assert cls.TAG == tag
        return cls()


class BinaryOp(Op):
    """Operations that act on a message and a single argument"""
    __slots__ = ('arg',)

    def __init__(self, arg):
        if not isinstance(arg, bytes):
            raise TypeError("arg must be bytes; got %r" % arg.__class__)
        elif not len(arg):
            raise OpArgValueError("%s arg can't be empty" % self.__class__.__name__)
        elif len(arg) > self.MAX_RESULT_LENGTH:
            raise OpArgValueError("%s arg too long: %d > %d" %
                                  (self.__class__.__name__, len(arg), self.MAX_RESULT_LENGTH))
        self.arg = arg

    def _key(self):
        return (self.TAG, self.arg)

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, self.arg)

    def __str__(self):
        return '%s %s' % (self.TAG_NAME, b2x(self.arg))

    def serialize(self, ctx):
        super().serialize(ctx)
        ctx.write_varbytes(self.arg)

    @classmethod
    def deserialize_from_tag(cls, ctx, tag):
        assert cls.TAG == tag
        arg = ctx.read_varbytes(cls.MAX_RESULT_LENGTH, min_len=1)
        return cls(arg)


@register_op
class OpAppend(BinaryOp):
    """Append a suffix to a message"""
    __slots__ = ()
    TAG = b'\xf0'
    TAG_NAME = 'append'

    def _do_op_call(self, msg):
        if len(msg) + len(self.arg) > self.MAX_RESULT_LENGTH:
            raise MsgValueError("Can't append %d bytes to a %d byte message: result too long" %
                                (len(self.arg), len(msg)))
        return msg + self.arg


@register_op
class OpPrepend(BinaryOp):
    """Prepend a prefix to a message"""
    __slots__ = ()
    TAG = b'\xf1'
    TAG_NAME = 'prepend'

    def _do_op_call(self, msg):
        if len(msg) + len(self.arg) > self.MAX_RESULT_LENGTH:
            raise MsgValueError("Can't prepend %d bytes to a %d byte message: result too long" %
                                (len(self.arg), len(msg)))
        return self.arg + msg


@register_op
class OpReverse(UnaryOp):
    __slots__ = ()
    TAG = b'\xf2'
    TAG_NAME = 'reverse'

    def _do_op_call(self, msg):
        if not len(msg):
            raise MsgValueError("Can't reverse an empty message")
        return msg[::-1]


@register_op
class OpHexlify(UnaryOp):
    """Convert bytes to lower-case hexadecimal representation

    Note that hexlify can only be performed on messages that aren't empty;
    hexlify on an empty message would create a #2 (empty) message, which is
    not allowed.
    """
    __slots__ = ()
    TAG = b'\xf3'
    TAG_NAME = 'hexlify'
    MAX_MSG_LENGTH = UnaryOp.MAX_RESULT_LENGTH // 2

    def _do_op_call(self, msg):
        if not len(msg):
            raise MsgValueError("Can't hexlify an empty message")
        return binascii.hexlify(msg)


class CryptOp(UnaryOp):
    """Cryptographic transformations

    These transformations have the unique property that for any length message,
    the size of the result they return is fixed. Additionally, they're the only
    type of operation that can be applied directly to a stream.
    """
    __slots__ = ()

    DIGEST_LENGTH = None
    HASHLIB_NAME = None

    def _new_hasher(self):
        return hashlib.new(self.HASHLIB_NAME)

    def _do_op_call(self, msg):
        hasher = self._new_hasher()
        hasher.update(msg)
        r = hasher.digest()
        assert len(r) == self.DIGEST_LENGTH
        return r

    def hash_fd(self, fd):
        hasher = self._new_hasher()

        while True:
            chunk = fd.read(2**20)  # 1MB chunks
            if chunk:
                hasher.update(chunk)
            else:
                break

        return hasher.digest()


# Cryptographic operation tag numbers taken from RFC4880, although it's not
# guaranteed that they'll continue to match that RFC in the future.

@register_op
class OpSHA1(CryptOp):
    # Remember that for timestamping, hash algorithms with collision attacks
    # *are* secure! We've still proven that both messages existed prior to some
    # point in time - the fact that they both have the same hash digest doesn't
    # change that.
    #
    # Heck, even md5 is still secure enough for timestamping... but that's
    # pushing our luck...
    __slots__ = ()
    TAG = b'\x02'
    TAG_NAME = 'sha1'
    HASHLIB_NAME = 'sha1'
    DIGEST_LENGTH = 20


@register_op
class OpRIPEMD160(CryptOp):
    __slots__ = ()
    TAG = b'\x03'
    TAG_NAME = 'ripemd160'
    DIGEST_LENGTH = 20

    def _new_hasher(self):
        # Not every OpenSSL build still ships ripemd160 in hashlib
        return RIPEMD160.new()


@register_op
class OpSHA256(CryptOp):
    __slots__ = ()
    TAG = b'\x08'
    TAG_NAME = 'sha256'
    HASHLIB_NAME = 'sha256'
    DIGEST_LENGTH = 32


@register_op
class OpKECCAK256(CryptOp):
    __slots__ = ()
    TAG = b'\x67'
    TAG_NAME = 'keccak256'
    DIGEST_LENGTH = 32

    def _new_hasher(self):
        return keccak.new(digest_bits=256)
