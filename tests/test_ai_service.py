import json
from unittest import mock

import pytest
import requests

from medchain.ai_service import (
    QUERY_EMPTY, QUERY_FALLBACK, VOICE_EMPTY, VOICE_FALLBACK, CommandInterpreter,
    GeminiAssistant, OfflineAssistant, build_assistant,
)

from conftest import NOW


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('no JSON body')
        return self._payload


def _reply(text):
    return FakeResponse(payload={'candidates': [{'content': {'parts': [{'text': text}]}}]})


def _gemini(*responses, **kwargs):
    session = mock.Mock()
    session.post.side_effect = list(responses)
    return GeminiAssistant('test-key', clock=lambda: NOW, session=session, **kwargs), session


@pytest.fixture
def patient(snapshot):
    return snapshot.find_patient('P1')


class TestCommandInterpreter:
    @pytest.fixture
    def interpreter(self):
        return CommandInterpreter()

    @pytest.mark.parametrize('query, intent', [
        ('Which items are low on stock?', 'low_stock'),
        ('What is expiring this month', 'expiring'),
        ('show the supply deficit', 'deficits'),
        ('any pending purchase orders?', 'pending_orders'),
        ('Who is on duty tonight', 'staff_on_duty'),
        ('Check inventory health.', 'inventory_health'),
        ('sing me a song', 'unknown'),
    ])
    def test_intents(self, interpreter, query, intent):
        assert interpreter.parse_query(query)['intent'] == intent

    def test_patient_search_entity(self, interpreter):
        parsed = interpreter.parse_query('find patient rigby')
        assert parsed['intent'] == 'patient_search'
        assert parsed['entities'] == {'patient_name': 'Rigby'}
        assert parsed['original_query'] == 'find patient rigby'

    def test_empty_query(self, interpreter):
        assert interpreter.parse_query('')['intent'] == 'unknown'


class TestGeminiTransport:
    def test_request_shape(self):
        ai, session = _gemini(_reply('All nodes nominal.'), timeout=5)
        assert ai.interpret_voice_command('status', 'Role: ADMIN') == 'All nodes nominal.'

        args, kwargs = session.post.call_args
        assert args[0].endswith('/models/gemini-3-flash-preview:generateContent')
        assert kwargs['headers'] == {'x-goog-api-key': 'test-key'}
        assert kwargs['timeout'] == 5
        assert 'Role: ADMIN' in kwargs['json']['contents'][0]['parts'][0]['text']

    def test_retries_once_on_timeout(self):
        ai, session = _gemini(requests.Timeout('slow'), _reply('Recovered.'))
        assert ai.interpret_voice_command('status', '') == 'Recovered.'
        assert session.post.call_count == 2

    def test_gives_up_after_retries(self):
        ai, session = _gemini(FakeResponse(503), FakeResponse(502))
        assert ai.interpret_voice_command('status', '') == VOICE_FALLBACK
        assert session.post.call_count == 2

    def test_client_errors_not_retried(self):
        ai, session = _gemini(FakeResponse(403, text='forbidden'))
        assert ai.answer_operational_query('revenue?', 'Rev: 1') == QUERY_FALLBACK
        assert session.post.call_count == 1

    def test_malformed_body(self):
        ai, _ = _gemini(FakeResponse(payload={'candidates': []}))
        assert ai.answer_operational_query('revenue?', '') == QUERY_FALLBACK

    @pytest.mark.parametrize('parts', [['text'], [{'text': 7}], {'text': 'hi'}])
    def test_malformed_parts(self, parts):
        ai, _ = _gemini(FakeResponse(payload={'candidates': [{'content': {'parts': parts}}]}))
        assert ai.interpret_voice_command('status', '') == VOICE_FALLBACK

    @pytest.mark.parametrize('error', [
        requests.TooManyRedirects('loop'),
        requests.exceptions.ChunkedEncodingError('cut'),
        requests.exceptions.InvalidURL('bad'),
    ])
    def test_other_transport_errors_not_retried(self, error, patient):
        ai, session = _gemini(error, _reply('unused'))
        assert ai.synthesize_bill(patient, 'Dr. X', []) is None
        assert session.post.call_count == 1

    def test_empty_text_uses_placeholders(self):
        ai, _ = _gemini(_reply(''), _reply(''))
        assert ai.interpret_voice_command('status', '') == VOICE_EMPTY
        assert ai.answer_operational_query('revenue?', '') == QUERY_EMPTY

    def test_query_uses_pro_model(self):
        ai, session = _gemini(_reply('Revenue is stable.'))
        assert ai.answer_operational_query('revenue?', 'Rev: 1') == 'Revenue is stable.'
        url = session.post.call_args[0][0]
        assert url.endswith('/models/gemini-3-pro-preview:generateContent')
        assert 'systemInstruction' in session.post.call_args[1]['json']


class TestGeminiOperations:
    def test_suggestions_parsed(self):
        body = json.dumps([{'name': 'Metformin 500mg', 'category': 'First-line', 'reason': 'Standard care'}])
        ai, session = _gemini(_reply(body))
        [suggestion] = ai.suggest_medications('Type 2 Diabetes', 'Metformin')
        assert suggestion.name == 'Metformin 500mg'
        config = session.post.call_args[1]['json']['generationConfig']
        assert config['responseMimeType'] == 'application/json'

    def test_suggestions_bad_json(self):
        ai, _ = _gemini(_reply('not json'))
        assert ai.suggest_medications('Flu', 'None') == []

    def test_suggestions_service_down(self):
        ai, _ = _gemini(requests.ConnectionError('down'), requests.ConnectionError('down'))
        assert ai.suggest_medications('Flu', 'None') == []

    def test_bill_fills_missing_fields(self, patient):
        body = json.dumps({'bill': {
            'id': 'INV-55501', 'patientName': 'John Doe',
            'items': [{'name': 'Paracetamol 500mg', 'quantity': 10, 'unitPrice': 5.5, 'total': 55}],
            'subtotal': 55, 'gst': 9.9, 'grandTotal': 64.9,
        }})
        ai, _ = _gemini(_reply(body))
        bill = ai.synthesize_bill(patient, 'Dr. Sarah Jenkins',
                                  [{'medicine_name': 'Paracetamol 500mg', 'quantity': 10, 'unit_price': 5.5}])
        assert bill.id == 'INV-55501'
        assert bill.patient_id == 'P1'
        assert bill.doctor_name == 'Dr. Sarah Jenkins'
        assert bill.date == '2024-03-22'
        assert bill.items[0].unit_price == 5.5

    def test_bill_missing_returns_none(self, patient):
        ai, _ = _gemini(_reply('{}'))
        assert ai.synthesize_bill(patient, 'Dr. X', []) is None

    def test_bill_invalid_returns_none(self, patient):
        ai, _ = _gemini(_reply(json.dumps({'bill': {'id': 'INV-1'}})))
        assert ai.synthesize_bill(patient, 'Dr. X', []) is None

    @pytest.mark.parametrize('bill', [['x'], 'INV-1', 42])
    def test_bill_of_wrong_shape_returns_none(self, patient, bill):
        ai, _ = _gemini(_reply(json.dumps({'bill': bill})))
        assert ai.synthesize_bill(patient, 'Dr. X', []) is None

    def test_bill_with_unreadable_date_returns_none(self, patient):
        body = json.dumps({'bill': {
            'id': 'INV-1', 'patientName': 'John Doe', 'date': 'next tuesday',
            'items': [], 'subtotal': 0, 'gst': 0, 'grandTotal': 0,
        }})
        ai, _ = _gemini(_reply(body))
        assert ai.synthesize_bill(patient, 'Dr. X', []) is None


class TestOfflineAssistant:
    def test_bill_math(self, assistant, patient):
        lines = [
            {'medicine_name': 'Paracetamol 500mg', 'quantity': 10, 'unit_price': 5.5},
            {'medicine_name': 'Diazepam 5mg', 'quantity': 2, 'unit_price': 12.0},
        ]
        bill = assistant.synthesize_bill(patient, 'Dr. Sarah Jenkins', lines)
        assert [i.total for i in bill.items] == [55.0, 24.0]
        assert bill.subtotal == pytest.approx(79.0)
        assert bill.gst == pytest.approx(14.22)
        assert bill.grand_total == pytest.approx(93.22)

    def test_invoice_numbers_increase(self, assistant, patient):
        first = assistant.synthesize_bill(patient, 'Dr. X', [])
        second = assistant.synthesize_bill(patient, 'Dr. X', [])
        assert (first.id, second.id) == ('INV-10001', 'INV-10002')

    def test_voice_is_short(self, assistant):
        context = ' '.join(['word'] * 40)
        answer = assistant.interpret_voice_command('check inventory', context)
        assert answer.startswith('Inventory health check.')
        assert len(answer.split()) == 15

    def test_unrecognised(self, assistant):
        assert assistant.interpret_voice_command('sing', 'ctx') == VOICE_EMPTY
        assert assistant.answer_operational_query('sing', 'ctx') == QUERY_EMPTY

    def test_query_mentions_entity(self, assistant):
        answer = assistant.answer_operational_query('find patient knope', 'Rev: 1')
        assert answer == 'Patient lookup: Knope. Rev: 1'

    def test_no_suggestions(self, assistant):
        assert assistant.suggest_medications('Flu', 'None') == []


def test_build_assistant():
    assert isinstance(build_assistant(None), OfflineAssistant)
    gemini = build_assistant('key', timeout=3, max_retries=0)
    assert isinstance(gemini, GeminiAssistant)
    assert (gemini.timeout, gemini.max_retries) == (3, 0)
