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

import collections
import concurrent.futures
import fnmatch
import functools
import logging
import urllib.parse

import requests
from bitcoin.core import b2x

import otsagent
from otsproof.notary import PendingAttestation
from otsproof.serialize import BytesDeserializationContext, DeserializationError
from otsproof.timestamp import Timestamp

DEFAULT_AGGREGATORS = \
    ('https://a.pool.opentimestamps.org',
     'https://b.pool.opentimestamps.org',
     'https://a.pool.eternitywall.com')

DEFAULT_CALENDAR_WHITELIST = \
    ('https://*.calendar.opentimestamps.org',  # Run by Peter Todd
     'https://*.calendar.eternitywall.com',  # Run by Riccardo Casatta of Eternity Wall
     'https://*.calendar.catallaxy.com')  # Run by Vincent Cloutier of Catallaxy

MAX_WORKERS = 16


class CalendarError(Exception):
    """A calendar request failed"""


class CommitmentNotFoundError(CalendarError):
    """The calendar doesn't know about the commitment"""


class CommitmentPendingError(CalendarError):
    """The calendar knows about the commitment, but has nothing new for it yet"""


class StampFailedError(Exception):
    """Not enough calendars accepted a submission

    failures maps calendar URL to the CalendarError for each calendar that
    didn't respond successfully.
    """

    def __init__(self, msg, successes, failures):
        super().__init__(msg)
        self.successes = successes
        self.failures = failures


class RemoteCalendar:
    """Remote calendar server interface"""

    MAX_RESPONSE_LENGTH = 10000
    """Largest timestamp we'll accept from a calendar"""

    def __init__(self, url, user_agent=None, timeout=30, session=None):
        if not isinstance(url, str):
            raise TypeError("URL must be a string")
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

        if user_agent is None:
            user_agent = 'ots-agent/%s' % otsagent.__version__

        self.request_headers = {"Accept": "application/vnd.opentimestamps.v1",
                                "User-Agent": user_agent}

    def __repr__(self):
        return 'RemoteCalendar(%r)' % self.url

    def __request(self, method, path, **kwargs):
        url = self.url + path
        try:
            with self.session.request(method, url, headers=self.request_headers,
                                      timeout=self.timeout, stream=True, **kwargs) as r:
                content = b''
                for chunk in r.iter_content(chunk_size=4096):
                    content += chunk
                    if len(content) > self.MAX_RESPONSE_LENGTH:
                        raise CalendarError("%s: response exceeds %d bytes" % (url, self.MAX_RESPONSE_LENGTH))

                return r.status_code, content

        except requests.RequestException as exp:
            raise CalendarError("%s: %r" % (url, exp))

    def __deserialize_timestamp(self, content, msg):
        ctx = BytesDeserializationContext(content)
        try:
            timestamp = Timestamp.deserialize(ctx, msg)
            ctx.assert_eof()
        except DeserializationError as exp:
            raise CalendarError("%s: invalid timestamp for %s: %s" % (self.url, b2x(msg), exp))
        return timestamp

    def submit(self, digest):
        """Submit a digest to the calendar

        Returns a Timestamp committing to that digest
        """
        status, content = self.__request('POST', '/digest', data=digest)

        if status != 200:
            raise CalendarError("%s: unexpected HTTP status %d submitting %s" % (self.url, status, b2x(digest)))

        return self.__deserialize_timestamp(content, digest)

    def get_timestamp(self, commitment):
        """Get a timestamp for a given commitment

        Raises CommitmentPendingError if the calendar has nothing new yet,
        CommitmentNotFoundError if it has never seen the commitment.
        """
        status, content = self.__request('GET', '/timestamp/' + b2x(commitment))

        if status == 200:
            return self.__deserialize_timestamp(content, commitment)

        elif status == 404:
            reason = content.decode('utf8', 'replace').strip()
            if reason.lower() == 'not found':
                raise CommitmentNotFoundError("%s: commitment %s not found" % (self.url, b2x(commitment)))
            else:
                raise CommitmentPendingError("%s: %s" % (self.url, reason))

        else:
            raise CalendarError("%s: unexpected HTTP status %d for commitment %s" % (self.url, status, b2x(commitment)))


class UrlWhitelist:
    """Glob-matching whitelist for URL's

    Patterns match the host of a URL; the scheme and path must match exactly.
    A pattern without a scheme matches both http and https.
    """

    def __init__(self, urls=()):
        self.patterns = set()
        for url in urls:
            self.add(url)

    def add(self, url):
        if not isinstance(url, str):
            raise TypeError("URL must be a string; got %r" % url.__class__)

        if '://' not in url:
            self.add('http://' + url)
            self.add('https://' + url)
            return

        parsed_url = urllib.parse.urlparse(url)
        if parsed_url.scheme not in ('http', 'https'):
            raise ValueError("Whitelisted URL scheme must be http or https; got %r" % url)

        if parsed_url.params or parsed_url.query or parsed_url.fragment:
            raise ValueError("Whitelisted URL can't have params, a query or a fragment; got %r" % url)

        self.patterns.add((parsed_url.scheme, parsed_url.netloc.lower(), parsed_url.path.rstrip('/')))

    def __contains__(self, url):
        parsed_url = urllib.parse.urlparse(url)

        if parsed_url.params or parsed_url.query or parsed_url.fragment:
            return False

        for scheme, netloc, path in self.patterns:
            if parsed_url.scheme == scheme and \
               parsed_url.path.rstrip('/') == path and \
               fnmatch.fnmatchcase(parsed_url.netloc.lower(), netloc):
                return True

        return False

    def __repr__(self):
        return 'UrlWhitelist(%r)' % sorted('%s://%s%s' % pattern for pattern in self.patterns)


def _fan_out(fn, items, timeout, label=str):
    """Call fn(item) for every item concurrently

    Yields (item, result, error) as calls complete, where error is the
    CalendarError a call raised. Calls still running after timeout seconds are
    abandoned and reported as failed, the error naming label(item); results that
    did arrive are kept.
    """
    if not items:
        return

    def outcome(future):
        try:
            return future.result(), None
        except CalendarError as exp:
            return None, exp

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=min(len(items), MAX_WORKERS))
    try:
        futures = collections.OrderedDict((executor.submit(fn, item), item) for item in items)
        remaining = set(futures)

        try:
            for future in concurrent.futures.as_completed(futures, timeout=timeout):
                remaining.discard(future)
                yield (futures[future],) + outcome(future)

        except concurrent.futures.TimeoutError:
            for future, item in futures.items():
                if future not in remaining:
                    continue
                elif future.done():
                    yield (item,) + outcome(future)
                else:
                    yield item, None, CalendarError("%s: timed out after %.1f seconds" % (label(item), timeout))

    finally:
        executor.shutdown(wait=False, cancel_futures=True)


StampResult = collections.namedtuple('StampResult', ['successes', 'failures'])


def create_timestamp(timestamp, calendar_urls, timeout=5, min_resp=1, calendar_factory=None):
    """Submit timestamp.msg to calendars, merging their responses into timestamp

    Submissions run concurrently; every response is merged in the order it
    arrives. Returns a StampResult with the list of calendars that responded
    and a dict of the errors from those that didn't.

    Raises StampFailedError if fewer than min_resp calendars responded. The
    responses that did arrive are still merged in that case.
    """
    calendar_urls = list(collections.OrderedDict.fromkeys(calendar_urls))
    if not calendar_urls:
        raise ValueError("Need at least one calendar")

    if calendar_factory is None:
        calendar_factory = functools.partial(RemoteCalendar, timeout=timeout)

    msg = timestamp.msg

    def submit(calendar_url):
        logging.debug("Submitting %s to %s" % (b2x(msg), calendar_url))
        return calendar_factory(calendar_url).submit(msg)

    successes = []
    failures = collections.OrderedDict()
    for calendar_url, calendar_timestamp, error in _fan_out(submit, calendar_urls, timeout):
        if error is not None:
            logging.warning("Failed to submit: %s" % error)
            failures[calendar_url] = error
        else:
            logging.info("Submitted to remote calendar %s" % calendar_url)
            timestamp.merge(calendar_timestamp)
            successes.append(calendar_url)

    if len(successes) < min_resp:
        raise StampFailedError("Only %d of the %d required calendars responded" % (len(successes), min_resp),
                               successes, failures)

    return StampResult(successes, failures)


UpgradeResult = collections.namedtuple('UpgradeResult', ['upgraded', 'pending', 'not_found', 'errors', 'skipped'])
"""Per-request outcome of an upgrade

Every entry is keyed by (calendar_uri, commitment). errors maps those keys to
the CalendarError encountered.
"""


def upgrade_timestamp(timestamp, whitelist=None, timeout=30, calendar_factory=None):
    """Ask the calendars of every pending attestation for a more complete timestamp

    Each distinct (calendar, commitment) is asked once, concurrently. Whatever
    the calendar returns is merged into the node the pending attestation is on;
    if that brought in any other attestation, the pending attestation is
    removed. Calendars not on the whitelist are never contacted.

    Returns an UpgradeResult. Only upgraded requests modify the timestamp.
    """
    if whitelist is None:
        whitelist = UrlWhitelist(DEFAULT_CALENDAR_WHITELIST)

    if calendar_factory is None:
        calendar_factory = functools.partial(RemoteCalendar, timeout=timeout)

    # Collected before anything is modified
    pending_nodes = collections.OrderedDict()
    for node in timestamp.walk():
        for attestation in node.attestations:
            if isinstance(attestation, PendingAttestation):
                pending_nodes.setdefault((attestation.uri, node.msg), []).append(node)

    result = UpgradeResult([], [], [], collections.OrderedDict(), [])

    requests_needed = []
    for key in pending_nodes:
        calendar_uri, commitment = key
        if calendar_uri in whitelist:
            requests_needed.append(key)
        else:
            logging.warning("Ignoring attestation from calendar %s: calendar not in whitelist" % calendar_uri)
            result.skipped.append(key)

    def get_timestamp(key):
        calendar_uri, commitment = key
        logging.debug("Checking calendar %s for %s" % (calendar_uri, b2x(commitment)))
        return calendar_factory(calendar_uri).get_timestamp(commitment)

    for key, upgraded_stamp, error in _fan_out(get_timestamp, requests_needed, timeout,
                                                 label=lambda key: key[0]):
        calendar_uri, commitment = key

        if isinstance(error, CommitmentPendingError):
            logging.debug("%s: still pending" % calendar_uri)
            result.pending.append(key)

        elif isinstance(error, CommitmentNotFoundError):
            logging.warning("Calendar %s doesn't know about commitment %s" % (calendar_uri, b2x(commitment)))
            result.not_found.append(key)

        elif error is not None:
            logging.warning("Failed to upgrade: %s" % error)
            result.errors[key] = error

        else:
            pending_attestation = PendingAttestation(calendar_uri)
            new_attestations = [attestation for msg, attestation in upgraded_stamp.all_attestations()
                                if attestation != pending_attestation]

            if not new_attestations:
                logging.debug("%s: nothing new" % calendar_uri)
                result.pending.append(key)
                continue

            for node in pending_nodes[key]:
                node.merge(upgraded_stamp)
                node.attestations.discard(pending_attestation)

            logging.info("Got %d attestation(s) from %s" % (len(new_attestations), calendar_uri))
            result.upgraded.append(key)

    return result
