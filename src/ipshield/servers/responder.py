from __future__ import annotations

import ipaddress
import logging
from typing import List

from dnslib import OPCODE, QTYPE, RR, TXT, A, DNSHeader, DNSQuestion, DNSRecord
from dnslib.dns import DNSError

from ..classifier import Classifier, QueryMalformed, Verdict, parse_address

logger = logging.getLogger("ipshield.responder")

DEFAULT_TTL = 3600
DEFAULT_SAFE_ADDRESS = "127.0.0.1"
DEFAULT_FLAGGED_ADDRESS = "127.0.0.2"


class QueryResponder:
    """Brief: Turn DNS questions about IP literals into verdict answers.

    Inputs (constructor):
      - classifier: Classifier used for every question.
      - ttl: TTL in seconds placed on every answer record.
      - safe_address: A-record answer when the verdict is SAFE.
      - flagged_address: A-record answer for every other verdict.

    Outputs:
      - QueryResponder exposing respond() for one question and
        resolve_query_bytes() for a whole wire message.

    Notes:
      - A queries collapse the verdict to a safe/flagged sentinel address;
        TXT queries carry the verdict name verbatim.
      - Other query types and names that are not address literals produce no
        answers (NOERROR with an empty answer section).
      - Only the in-memory store is consulted; nothing here blocks on I/O.

    Example:
      >>> responder = QueryResponder(classifier, ttl=3600)  # doctest: +SKIP
      >>> wire = responder.resolve_query_bytes(DNSRecord.question("203.0.113.5", "TXT").pack(), "127.0.0.1")  # doctest: +SKIP
    """

    def __init__(
        self,
        classifier: Classifier,
        ttl: int = DEFAULT_TTL,
        safe_address: str = DEFAULT_SAFE_ADDRESS,
        flagged_address: str = DEFAULT_FLAGGED_ADDRESS,
    ) -> None:
        self.classifier = classifier
        self.ttl = max(0, int(ttl))
        # Validate sentinels up front so a bad config fails at startup.
        self.safe_address = str(ipaddress.IPv4Address(safe_address))
        self.flagged_address = str(ipaddress.IPv4Address(flagged_address))
        if self.safe_address == self.flagged_address:
            raise ValueError("safe_address and flagged_address must differ")

    def respond(self, question: DNSQuestion) -> List[RR]:
        """Brief: Build the answer records for one question.

        Inputs:
          - question: dnslib DNSQuestion (qname + qtype).

        Outputs:
          - List[RR]: zero or one answer record.
        """

        qtype = question.qtype
        if qtype not in (QTYPE.A, QTYPE.TXT):
            logger.debug(
                "Unsupported qtype %s for %s", QTYPE.get(qtype, qtype), question.qname
            )
            return []

        try:
            address = parse_address(str(question.qname))
        except QueryMalformed as exc:
            logger.debug("Ignoring question: %s", exc)
            return []

        verdict = self.classifier.classify(address)
        if qtype == QTYPE.A:
            sentinel = (
                self.safe_address if verdict is Verdict.SAFE else self.flagged_address
            )
            rdata = A(sentinel)
        else:
            rdata = TXT(verdict.value)

        return [
            RR(
                rname=question.qname,
                rtype=qtype,
                rclass=1,
                ttl=self.ttl,
                rdata=rdata,
            )
        ]

    def build_reply(self, request: DNSRecord) -> DNSRecord:
        """Brief: Build the reply message for a parsed request.

        Inputs:
          - request: Parsed DNSRecord.

        Outputs:
          - DNSRecord reply echoing id, opcode, rd and all questions; answers
            are only added for standard QUERY opcodes.
        """

        reply = DNSRecord(
            DNSHeader(
                id=request.header.id,
                qr=1,
                aa=1,
                ra=0,
                rd=request.header.rd,
                opcode=request.header.opcode,
            ),
            questions=list(request.questions),
        )
        if request.header.opcode != OPCODE.QUERY:
            logger.debug("Ignoring opcode %s", OPCODE.get(request.header.opcode))
            return reply
        for question in request.questions:
            for rr in self.respond(question):
                reply.add_answer(rr)
        return reply

    def resolve_query_bytes(self, data: bytes, client_ip: str) -> bytes:
        """Brief: Resolve one wire-format query into a wire-format reply.

        Inputs:
          - data: DNS query bytes as received by a listener.
          - client_ip: Peer address, used for logging only.

        Outputs:
          - bytes: reply wire, or b"" when the datagram is not a parseable
            DNS message (the listener then sends nothing).
        """

        try:
            request = DNSRecord.parse(data)
        except (DNSError, ValueError, IndexError) as exc:
            logger.debug("Dropping unparseable query from %s: %s", client_ip, exc)
            return b""

        reply = self.build_reply(request)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "%s asked %s -> %d answers",
                client_ip,
                ", ".join(
                    f"{q.qname} {QTYPE.get(q.qtype, q.qtype)}" for q in request.questions
                ),
                len(reply.rr),
            )
        return reply.pack()
