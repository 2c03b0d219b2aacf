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

import collections.abc

from bitcoin.core import b2x, b2lx

from otsproof.notary import TimeAttestation, BitcoinBlockHeaderAttestation
from otsproof.op import Op, CryptOp, OpAppend, OpPrepend, OpSHA256, MsgValueError
from otsproof.serialize import DeserializationError, RecursionLimitReached, UnsupportedMajorVersion


class OrderedSet(collections.abc.MutableSet):
    """Set that iterates in insertion order

    Equality ignores order, like a regular set.
    """

    def __init__(self, items=()):
        self.__d = {}
        self.update(items)

    def __contains__(self, item):
        return item in self.__d

    def __iter__(self):
        return iter(self.__d)

    def __len__(self):
        return len(self.__d)

    def __repr__(self):
        return 'OrderedSet(%r)' % list(self.__d)

    def add(self, item):
        self.__d[item] = ()

    def discard(self, item):
        self.__d.pop(item, None)

    def update(self, items):
        for item in items:
            self.add(item)


class OpSet(collections.abc.MutableMapping):
    """Set of operations, each leading to a child timestamp"""

    def __init__(self, parent_msg):
        self.__parent_msg = parent_msg
        self.__d = {}

    def add(self, op):
        """Add a new operation to the set

        Returns the timestamp for the result; if the operation is already in
        the set, the existing timestamp is returned.
        """
        try:
            return self.__d[op]
        except KeyError:
            stamp = Timestamp(op(self.__parent_msg))
            self.__d[op] = stamp
            return stamp

    def __getitem__(self, op):
        return self.__d[op]

    def __setitem__(self, op, new_timestamp):
        if not isinstance(new_timestamp, Timestamp):
            raise TypeError("Expected Timestamp; got %r" % new_timestamp.__class__)

        if new_timestamp.msg != op(self.__parent_msg):
            raise ValueError("Timestamp message does not match result of %r" % op)

        self.__d[op] = new_timestamp

    def __delitem__(self, op):
        del self.__d[op]

    def __iter__(self):
        return iter(self.__d)

    def __len__(self):
        return len(self.__d)

    def __repr__(self):
        return 'OpSet(%r)' % self.__d


class Timestamp:
    """Proof that one or more attestations commit to a message

    The proof is in the form of a tree, with each node being a message, and the
    edges being operations acting on those messages. The leafs of the tree are
    attestations that attest to the time that messages in the tree existed
    prior.

    A node may have both attestations and operations: the message is then
    attested directly and also committed to further along.
    """

    __slots__ = ['__msg', 'attestations', 'ops']

    @property
    def msg(self):
        return self.__msg

    def __init__(self, msg):
        if not isinstance(msg, bytes):
            raise TypeError("Expected msg to be bytes; got %r" % msg.__class__)

        elif len(msg) > Op.MAX_MSG_LENGTH:
            raise ValueError("Message exceeds Op length limit; %d > %d" % (len(msg), Op.MAX_MSG_LENGTH))

        self.__msg = bytes(msg)
        self.attestations = OrderedSet()
        self.ops = OpSet(self.__msg)

    def __eq__(self, other):
        if isinstance(other, Timestamp):
            return self.__msg == other.__msg and \
                   self.attestations == other.attestations and \
                   self.ops == other.ops
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        return 'Timestamp(<%s>)' % b2x(self.__msg)

    def merge(self, other):
        """Add all operations and attestations from another timestamp to this one

        Raises ValueError if the other timestamp isn't for the same message
        """
        if not isinstance(other, Timestamp):
            raise TypeError("Can only merge Timestamps together; got %r" % other.__class__)

        if self.__msg != other.__msg:
            raise ValueError("Can't merge timestamps for different messages together")

        self.attestations.update(other.attestations)

        for other_op, other_op_stamp in other.ops.items():
            our_op_stamp = self.ops.add(other_op)
            our_op_stamp.merge(other_op_stamp)

    def serialize(self, ctx):
        """Serialize the tree below this node

        Attestations are written first, then operations, each group in the
        order it was added. A proof read from disk is therefore written back
        byte for byte, unless it repeated an attestation or an operation at one
        node, or put an attestation after an operation: duplicates are merged
        into a single entry and attestations always lead.
        """
        if not len(self.attestations) and not len(self.ops):
            raise ValueError("An empty timestamp can't be serialized")

        entries = [(None, attestation) for attestation in self.attestations]
        entries.extend(self.ops.items())

        for i, (op, value) in enumerate(entries):
            if i < len(entries) - 1:
                ctx.write_bytes(b'\xff')

            if op is None:
                ctx.write_bytes(b'\x00')
                value.serialize(ctx)
            else:
                op.serialize(ctx)
                value.serialize(ctx)

    @classmethod
    def deserialize(cls, ctx, initial_msg, _recursion_limit=256):
        """Deserialize

        Because the serialization format doesn't include the message that the
        timestamp operates on, you have to provide it so that the correct
        operation results can be calculated.

        The message you provide is assumed to be correct; if it causes a op to
        raise MsgValueError when the results are being calculated (done
        immediately, not lazily) DeserializationError is raised instead.
        """
        if _recursion_limit <= 0:
            raise RecursionLimitReached("Reached timestamp recursion depth limit while deserializing")

        self = cls(initial_msg)

        def do_tag_or_attestation(tag):
            if tag == b'\x00':
                attestation = TimeAttestation.deserialize(ctx)
                self.attestations.add(attestation)

            else:
                op = Op.deserialize_from_tag(ctx, tag)

                try:
                    result = op(initial_msg)
                except MsgValueError as exp:
                    raise DeserializationError("Invalid timestamp; message invalid for op %r: %r" % (op, exp))

                stamp = Timestamp.deserialize(ctx, result, _recursion_limit=_recursion_limit - 1)
                if op in self.ops:
                    self.ops[op].merge(stamp)
                else:
                    self.ops[op] = stamp

        tag = ctx.read_bytes(1)
        while tag == b'\xff':
            current_tag = ctx.read_bytes(1)
            do_tag_or_attestation(current_tag)
            tag = ctx.read_bytes(1)

        do_tag_or_attestation(tag)

        return self

    def walk(self):
        """Iterate over every node in the tree, depth first, starting with this one"""
        yield self
        for op_stamp in self.ops.values():
            yield from op_stamp.walk()

    def all_attestations(self):
        """Iterate over all attestations recursively

        Returns iterable of (msg, attestation)
        """
        for stamp in self.walk():
            for attestation in stamp.attestations:
                yield (stamp.msg, attestation)

    def is_complete(self):
        """True if at least one Bitcoin attestation is present"""
        for msg, attestation in self.all_attestations():
            if isinstance(attestation, BitcoinBlockHeaderAttestation):
                return True
        return False

    def str_tree(self, indent=0, verbosity=0):
        """Render the tree as indented text, one operation or attestation per line"""

        def str_result(stamp):
            if verbosity > 0:
                return " == %s" % b2x(stamp.msg)
            return ""

        r = ""
        for attestation in sorted(self.attestations):
            r += " "*indent + "verify %s\n" % attestation
            if isinstance(attestation, BitcoinBlockHeaderAttestation):
                r += " "*indent + "# Bitcoin block merkle root %s\n" % b2lx(self.msg)

        sorted_ops = sorted(self.ops.items(), key=lambda item: item[0])
        if len(sorted_ops) > 1:
            for op, stamp in sorted_ops:
                r += " "*indent + " -> %s%s\n" % (op, str_result(stamp))
                r += stamp.str_tree(indent + 4, verbosity=verbosity)

        elif len(sorted_ops) == 1:
            op, stamp = sorted_ops[0]
            r += " "*indent + "%s%s\n" % (op, str_result(stamp))
            r += stamp.str_tree(indent, verbosity=verbosity)

        return r


def evaluate(timestamp, msg=None):
    """Evaluate every path of a timestamp

    Starting from msg (by default the timestamp's own message), every
    operation from the root to each attestation is applied in order. Returns a
    list of (digest, attestation), one entry per attestation, depth first: a
    node's own attestations come before those of its children, children are
    visited in stored order.

    The digests are recomputed, not taken from the stored node messages.
    """
    if msg is None:
        msg = timestamp.msg

    results = []

    def walk(stamp, stamp_msg):
        for attestation in stamp.attestations:
            results.append((stamp_msg, attestation))

        for op, op_stamp in stamp.ops.items():
            walk(op_stamp, op(stamp_msg))

    walk(timestamp, msg)
    return results


def cat_then_unary_op(unary_op_cls, left, right):
    """Concatenate left and right, then perform a unary operation on them

    left and right can be either timestamps or bytes.

    Appropriate intermediary append/prepend operations will be created as
    needed for left and right.
    """
    if not isinstance(left, Timestamp):
        left = Timestamp(left)

    if not isinstance(right, Timestamp):
        right = Timestamp(right)

    left_append_stamp = left.ops.add(OpAppend(right.msg))
    right_prepend_stamp = right.ops.add(OpPrepend(left.msg))

    # Left and right should produce the same thing, so we can set the
    # timestamp of the left to the right.
    #
    # The shared node only lives in the in-memory tree built while stamping.
    # Each leaf is serialized on its own, so every proof on disk, and every
    # proof read back, is a plain tree.
    right.ops[OpPrepend(left.msg)] = left_append_stamp

    return left_append_stamp.ops.add(unary_op_cls())


def cat_sha256(left, right):
    return cat_then_unary_op(OpSHA256, left, right)


def cat_sha256d(left, right):
    sha256_timestamp = cat_sha256(left, right)
    return sha256_timestamp.ops.add(OpSHA256())


def make_merkle_tree(timestamps, binop=cat_sha256):
    """Merkelize a set of timestamps

    Pairs of timestamps are combined with binop(), level by level, until one
    tip remains. An odd timestamp at the end of a level is carried up
    unchanged. Proofs already issued depend on this exact pairing.

    Returns the timestamp for the tip of the tree.
    """
    stamps = timestamps
    while True:
        stamps = iter(stamps)

        try:
            prev_stamp = next(stamps)
        except StopIteration:
            raise ValueError("Need at least one timestamp")

        next_stamps = []
        for stamp in stamps:
            if prev_stamp is not None:
                next_stamps.append(binop(prev_stamp, stamp))
                prev_stamp = None
            else:
                prev_stamp = stamp

        if prev_stamp is not None:
            next_stamps.append(prev_stamp)

        if len(next_stamps) == 1:
            return next_stamps[0]

        stamps = next_stamps


class DetachedTimestampFile:
    """A file containing a timestamp for another file

    Contains a timestamp, along with a header and the digest of the file.
    """

    HEADER_MAGIC = b'\x00OpenTimestamps\x00\x00Proof\x00\xbf\x89\xe2\xe8\x84\xe8\x92\x94'
    """Header magic bytes

    Designed to be give the user some information in a hexdump, while being
    identified as 'data' by the file utility.
    """

    MIN_FILE_DIGEST_LENGTH = 20  # 160-bit hash
    MAX_FILE_DIGEST_LENGTH = 32  # 256-bit hash

    MAJOR_VERSION = 1

    # While the git commit timestamps have a minor version, probably better to
    # leave it out here: unlike Git commits round-tripping is an issue when
    # timestamps are upgraded, and we could end up with bugs related to not
    # saving/updating minor version numbers correctly.

    @property
    def file_digest(self):
        """The digest of the file that was timestamped"""
        return self.timestamp.msg

    def __init__(self, file_hash_op, timestamp):
        if not isinstance(file_hash_op, CryptOp):
            raise TypeError("file_hash_op must be a CryptOp; got %r" % file_hash_op.__class__)

        if len(timestamp.msg) != file_hash_op.DIGEST_LENGTH:
            raise ValueError("Timestamp message length and file_hash_op digest length differ")

        self.file_hash_op = file_hash_op
        self.timestamp = timestamp

    def __repr__(self):
        return 'DetachedTimestampFile(<%s:%s>)' % (str(self.file_hash_op), b2x(self.file_digest))

    def __eq__(self, other):
        if isinstance(other, DetachedTimestampFile):
            return self.file_hash_op == other.file_hash_op and self.timestamp == other.timestamp
        return NotImplemented

    __hash__ = None

    @classmethod
    def from_fd(cls, file_hash_op, fd):
        fd_hash = file_hash_op.hash_fd(fd)
        return cls(file_hash_op, Timestamp(fd_hash))

    def serialize(self, ctx):
        ctx.write_bytes(self.HEADER_MAGIC)

        ctx.write_varuint(self.MAJOR_VERSION)

        self.file_hash_op.serialize(ctx)
        assert self.file_hash_op.DIGEST_LENGTH == len(self.timestamp.msg)
        ctx.write_bytes(self.timestamp.msg)

        self.timestamp.serialize(ctx)

    @classmethod
    def deserialize(cls, ctx):
        ctx.assert_magic(cls.HEADER_MAGIC)

        major = ctx.read_varuint()
        if major != cls.MAJOR_VERSION:
            raise UnsupportedMajorVersion("Version %d detached timestamp files are not supported" % major)

        file_hash_op = Op.deserialize(ctx)
        if not isinstance(file_hash_op, CryptOp):
            raise DeserializationError("File hash operation must be a hash; got %r" % file_hash_op)

        file_hash = ctx.read_bytes(file_hash_op.DIGEST_LENGTH)
        timestamp = Timestamp.deserialize(ctx, file_hash)

        ctx.assert_eof()
        return DetachedTimestampFile(file_hash_op, timestamp)
