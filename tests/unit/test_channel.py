"""
Unit tests for webhook parsing and the verification handshake.
"""

import unittest

from invoice_intake.intake.channel import (
    EventType,
    normalize_identity,
    parse_webhook,
    verify_subscription,
)

SENDER = "919876543210"


def delivery(*messages, statuses=None):
    value = {'messaging_product': 'whatsapp', 'messages': list(messages)}
    if statuses is not None:
        value = {'statuses': statuses}
    return {'object': 'whatsapp_business_account',
            'entry': [{'id': 'waba', 'changes': [{'field': 'messages', 'value': value}]}]}


class TestIdentity(unittest.TestCase):

    def test_numbers_become_e164(self):
        self.assertEqual(normalize_identity(SENDER), "+919876543210")
        self.assertEqual(normalize_identity("+91 98765 43210"), "+919876543210")
        self.assertEqual(normalize_identity("9876543210"), "+919876543210")

    def test_invalid_numbers_are_rejected(self):
        for raw in ("", "12345", "not a number"):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    normalize_identity(raw)


class TestVerification(unittest.TestCase):

    def test_handshake(self):
        self.assertEqual(verify_subscription('subscribe', 'secret', '1158201444', 'secret'), '1158201444')
        self.assertIsNone(verify_subscription('subscribe', 'wrong', '1158201444', 'secret'))
        self.assertIsNone(verify_subscription('unsubscribe', 'secret', '1158201444', 'secret'))
        self.assertIsNone(verify_subscription('subscribe', 'secret', None, 'secret'))
        self.assertIsNone(verify_subscription('subscribe', 'secret', '1', None))


class TestParseWebhook(unittest.TestCase):

    def test_text_message(self):
        events = parse_webhook(delivery({'from': SENDER, 'id': 'wamid.1', 'timestamp': '1760000000',
                                         'type': 'text', 'text': {'body': '  Hi  '}}))
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.sender_identity, "+919876543210")
        self.assertEqual(event.type, EventType.TEXT)
        self.assertEqual(event.text, "Hi")
        self.assertEqual(event.message_id, 'wamid.1')
        self.assertFalse(event.type.is_document)

    def test_media_messages(self):
        events = parse_webhook(delivery(
            {'from': SENDER, 'id': 'wamid.2', 'type': 'image',
             'image': {'id': 'media-1', 'mime_type': 'image/jpeg', 'caption': 'bill'}},
            {'from': SENDER, 'id': 'wamid.3', 'type': 'document',
             'document': {'id': 'media-2', 'mime_type': 'application/pdf', 'filename': 'INV-1001.pdf'}},
        ))
        image, document = events
        self.assertEqual(image.type, EventType.IMAGE)
        self.assertEqual(image.payload['filename'], 'media-1.jpeg')
        self.assertEqual(image.payload['caption'], 'bill')
        self.assertTrue(image.type.is_document)
        self.assertEqual(document.payload, {'media_id': 'media-2', 'mime_type': 'application/pdf',
                                            'filename': 'INV-1001.pdf', 'caption': None})

    def test_button_replies(self):
        events = parse_webhook(delivery(
            {'from': SENDER, 'id': 'wamid.4', 'type': 'interactive',
             'interactive': {'type': 'button_reply', 'button_reply': {'id': 'doc:invoice', 'title': 'Invoice'}}},
            {'from': SENDER, 'id': 'wamid.5', 'type': 'interactive',
             'interactive': {'type': 'list_reply', 'list_reply': {'id': 'doc:pan_card', 'title': 'Pan Card'}}},
            {'from': SENDER, 'id': 'wamid.6', 'type': 'button', 'button': {'payload': 'reset', 'text': 'Reset'}},
        ))
        self.assertEqual([e.type for e in events], [EventType.BUTTON_CLICK] * 3)
        self.assertEqual([e.action_id for e in events], ['doc:invoice', 'doc:pan_card', 'reset'])

    def test_unsupported_and_malformed_messages_are_skipped(self):
        events = parse_webhook(delivery(
            {'from': SENDER, 'id': 'wamid.7', 'type': 'sticker', 'sticker': {'id': 's'}},
            {'from': SENDER, 'id': 'wamid.8', 'type': 'image', 'image': {}},
            {'from': 'abc', 'id': 'wamid.9', 'type': 'text', 'text': {'body': 'hi'}},
            {'from': SENDER, 'id': 'wamid.10', 'type': 'text', 'text': {'body': 'ok'}},
        ))
        self.assertEqual([e.message_id for e in events], ['wamid.10'])

    def test_status_callbacks_and_empty_payloads(self):
        self.assertEqual(parse_webhook(delivery(statuses=[{'id': 'wamid.1', 'status': 'read'}])), [])
        self.assertEqual(parse_webhook({}), [])


if __name__ == '__main__':
    unittest.main()
