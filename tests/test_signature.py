from __future__ import annotations

import hashlib
import hmac
import itertools
import unittest

from rtms.signature import StreamSigner, sign


class TestSignature(unittest.TestCase):

    def test_matches_hmac_sha256_hex(self) -> None:
        expected = hmac.new(b"secret", b"client,session,stream", hashlib.sha256).hexdigest()
        self.assertEqual(expected, sign("client,session,stream", "secret"))

    def test_deterministic_64_hex_chars(self) -> None:
        signer = StreamSigner("client", "secret")
        first = signer.for_stream("session", "stream")
        self.assertEqual(first, signer.for_stream("session", "stream"))
        self.assertEqual(64, len(first))
        self.assertTrue(all(c in "0123456789abcdef" for c in first))

    def test_signs_client_session_stream(self) -> None:
        signer = StreamSigner("client", "secret")
        self.assertEqual(sign("client,session,stream", "secret"), signer.for_stream("session", "stream"))

    def test_any_input_change_changes_digest(self) -> None:
        values = {
            "client_id": ("client-a", "client-b"),
            "secret": ("secret-a", "secret-b"),
            "session_id": ("session-a", "session-b", "session-c"),
            "stream_id": ("stream-a", "stream-b", "stream-c"),
        }
        digests = {}
        for client_id, secret, session_id, stream_id in itertools.product(*values.values()):
            digest = StreamSigner(client_id, secret).for_stream(session_id, stream_id)
            digests[(client_id, secret, session_id, stream_id)] = digest
        # no collisions across the corpus
        self.assertEqual(len(digests), len(set(digests.values())))

    def test_credentials_required(self) -> None:
        with self.assertRaises(ValueError):
            StreamSigner("", "secret")
        with self.assertRaises(ValueError):
            StreamSigner("client", "")

    def test_repr_hides_secret(self) -> None:
        self.assertNotIn("top-secret", repr(StreamSigner("client", "top-secret")))
