"""
AI Service for MedChain
- Clinical medication suggestions
- Bill synthesis
- Voice command interpretation
- Operational Q&A

GeminiAssistant talks to the Gemini generateContent REST endpoint. When no
API key is configured OfflineAssistant answers with local heuristics so the
dashboard keeps working with the assistant absent.
"""

import itertools
import json
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import requests
from pydantic import ValidationError

from .models import Bill, MedicationSuggestion, Patient

logger = logging.getLogger(__name__)

GST_RATE = 0.18
DEFAULT_BASE_URL = 'https://generativelanguage.googleapis.com/v1beta'
FLASH_MODEL = 'gemini-3-flash-preview'
PRO_MODEL = 'gemini-3-pro-preview'

VOICE_FALLBACK = 'Voice node error.'
VOICE_EMPTY = 'Protocol misinterpreted.'
QUERY_FALLBACK = 'Clinical intelligence connection error.'
QUERY_EMPTY = 'Unable to retrieve node intelligence.'

SUGGESTION_SCHEMA = {
    'type': 'ARRAY',
    'items': {
        'type': 'OBJECT',
        'properties': {
            'name': {'type': 'STRING', 'description': 'Generic name and standard starting dose'},
            'category': {'type': 'STRING', 'description': 'First-line, Secondary, or Supportive'},
            'reason': {'type': 'STRING', 'description': 'Systematic clinical justification'},
        },
        'required': ['name', 'category', 'reason'],
    },
}

BILL_SCHEMA = {
    'type': 'OBJECT',
    'properties': {
        'bill': {
            'type': 'OBJECT',
            'properties': {
                'id': {'type': 'STRING'},
                'patientId': {'type': 'STRING'},
                'patientName': {'type': 'STRING'},
                'doctorName': {'type': 'STRING'},
                'date': {'type': 'STRING'},
                'items': {
                    'type': 'ARRAY',
                    'items': {
                        'type': 'OBJECT',
                        'properties': {
                            'name': {'type': 'STRING'},
                            'quantity': {'type': 'NUMBER'},
                            'unitPrice': {'type': 'NUMBER'},
                            'total': {'type': 'NUMBER'},
                        },
                    },
                },
                'subtotal': {'type': 'NUMBER'},
                'gst': {'type': 'NUMBER'},
                'grandTotal': {'type': 'NUMBER'},
            },
            'required': ['id', 'patientName', 'items', 'subtotal', 'gst', 'grandTotal'],
        },
    },
}


class AssistantUnavailable(Exception):
    """The generative service failed, timed out or returned unusable output"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandInterpreter:
    """Pattern-based intent detection for voice commands and admin queries"""

    def __init__(self):
        self.patterns = {
            'low_stock': [
                r"low.*stock",
                r"stock.*(?:low|critical|short)",
                r"critical.*(?:items|stock|medicines?)",
                r"running.*(?:low|out)",
            ],
            'expiring': [
                r"expir",
                r"(?:wastage|waste|spoil)",
            ],
            'deficits': [
                r"deficit",
                r"shortfall",
                r"(?:demand|gap).*(?:supply|stock)",
            ],
            'pending_orders': [
                r"(?:pending|open|awaiting).*(?:orders?|po|purchase)",
                r"purchase.*orders?",
                r"orders?.*(?:pending|authori[sz])",
            ],
            'staff_on_duty': [
                r"(?:staff|nurses?|who).*(?:on duty|duty|shift)",
                r"on duty",
            ],
            'patient_search': [
                r"find.*patient\s+(\w+)",
                r"search.*patient\s+(\w+)",
                r"patient.*named\s+(\w+)",
            ],
            'inventory_health': [
                r"inventory.*(?:health|status|check)",
                r"(?:check|show).*inventory",
                r"stock.*(?:health|status)",
            ],
        }

    def parse_query(self, query: str) -> Dict:
        """Parse natural language command"""
        query_lower = (query or '').lower().strip()

        result = {
            'intent': 'unknown',
            'entities': {},
            'original_query': query
        }

        # patient search first: it is the only intent that carries an entity
        for pattern in self.patterns['patient_search']:
            match = re.search(pattern, query_lower)
            if match:
                result['intent'] = 'patient_search'
                result['entities']['patient_name'] = match.group(1).title()
                return result

        for intent in ('low_stock', 'expiring', 'deficits', 'pending_orders',
                       'staff_on_duty', 'inventory_health'):
            for pattern in self.patterns[intent]:
                if re.search(pattern, query_lower):
                    result['intent'] = intent
                    return result

        return result


INTENT_SUMMARIES = {
    'inventory_health': 'Inventory health check',
    'low_stock': 'Critical stock review',
    'expiring': 'Expiry and wastage review',
    'deficits': 'Demand deficit review',
    'pending_orders': 'Pending purchase orders review',
    'staff_on_duty': 'On-duty staff roster',
    'patient_search': 'Patient lookup',
}


def _clip_words(text: str, limit: int) -> str:
    words = text.split()
    return ' '.join(words[:limit])


class GeminiAssistant:
    """Generative assistant backed by the Gemini REST API"""

    def __init__(self, api_key: str, model: str = FLASH_MODEL, pro_model: str = PRO_MODEL,
                 timeout: float = 20.0, max_retries: int = 1, base_url: str = DEFAULT_BASE_URL,
                 clock: Callable[[], datetime] = _utcnow, session=None):
        self.api_key = api_key
        self.model = model
        self.pro_model = pro_model
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.base_url = base_url.rstrip('/')
        self.clock = clock
        self.http = session or requests

    # ---------------- TRANSPORT ----------------
    def _generate(self, model: str, prompt: str, system_instruction: Optional[str] = None,
                  schema: Optional[Dict] = None) -> str:
        body = {'contents': [{'role': 'user', 'parts': [{'text': prompt}]}]}
        if system_instruction:
            body['systemInstruction'] = {'parts': [{'text': system_instruction}]}
        if schema:
            body['generationConfig'] = {
                'responseMimeType': 'application/json',
                'responseSchema': schema,
            }

        url = f'{self.base_url}/models/{model}:generateContent'
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self.http.post(
                    url,
                    json=body,
                    headers={'x-goog-api-key': self.api_key},
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                logger.warning("Gemini request failed (attempt %d/%d): %s",
                               attempt + 1, self.max_retries + 1, e)
                continue
            except requests.RequestException as e:
                raise AssistantUnavailable(f'Gemini request error: {e}') from e

            if resp.status_code >= 500:
                last_error = AssistantUnavailable(f'HTTP {resp.status_code}')
                logger.warning("Gemini returned HTTP %s (attempt %d/%d)",
                               resp.status_code, attempt + 1, self.max_retries + 1)
                continue
            if resp.status_code >= 400:
                raise AssistantUnavailable(f'HTTP {resp.status_code}: {resp.text[:200]}')

            try:
                payload = resp.json()
                parts = payload['candidates'][0]['content']['parts']
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise AssistantUnavailable(f'Malformed response: {e}') from e
            if not isinstance(parts, list) or not all(isinstance(p, dict) for p in parts):
                raise AssistantUnavailable('Malformed response: parts are not objects')
            texts = [p.get('text', '') for p in parts]
            if not all(isinstance(t, str) for t in texts):
                raise AssistantUnavailable('Malformed response: non-text part')
            return ''.join(texts)

        raise AssistantUnavailable(f'Gemini unreachable: {last_error}')

    # ---------------- OPERATIONS ----------------
    def suggest_medications(self, diagnosis: str, history: str) -> List[MedicationSuggestion]:
        prompt = (
            f'DIAGNOSIS: "{diagnosis}"\n'
            f'PATIENT HISTORY: "{history}"\n\n'
            'As a clinical pharmacologist, provide a SYSTEMATIC medication protocol.\n'
            'Categorize suggestions into:\n'
            '1. "First-line Treatment" (Standard of care)\n'
            '2. "Alternative/Secondary" (If first-line is not tolerated)\n'
            '3. "Supportive/Complication Management" (Addressing secondary symptoms of the diagnosis)\n\n'
            f'STRICT RULE: Only suggest medications standard for "{diagnosis}".'
        )
        try:
            text = self._generate(
                self.pro_model, prompt,
                system_instruction=(
                    'You are a Senior Medical Officer. Provide highly systematic, evidence-based '
                    'medication protocols categorized by clinical priority.'
                ),
                schema=SUGGESTION_SCHEMA,
            )
            raw = json.loads(text or '[]')
            if not isinstance(raw, list):
                raise AssistantUnavailable('Suggestions were not a list')
            return [MedicationSuggestion.model_validate(s) for s in raw]
        except (AssistantUnavailable, ValueError, ValidationError) as e:
            logger.error("Clinical AI error: %s", e)
            return []

    def synthesize_bill(self, patient: Patient, doctor_name: str, lines: List[Dict]) -> Optional[Bill]:
        today = self.clock().date().isoformat()
        items = ', '.join(
            f"{l['medicine_name']} (Qty: {l['quantity']}, Price: {l['unit_price']})" for l in lines
        )
        prompt = (
            f'Generate a professional hospital bill for patient {patient.name} (ID: {patient.id}).\n'
            f'The doctor is {doctor_name}.\n'
            f'The date is {today}.\n'
            f'Items prescribed: {items}.\n'
            'Calculate the total in Indian Rupees, add 18% GST, and return a structured JSON bill.\n'
            'Ensure the ID is unique (e.g., INV-XXXXX).'
        )
        try:
            text = self._generate(self.model, prompt, schema=BILL_SCHEMA)
            raw = json.loads(text or '{}')
            bill = raw.get('bill') if isinstance(raw, dict) else None
            if not isinstance(bill, dict) or not bill:
                raise AssistantUnavailable('Response carried no bill')
            bill.setdefault('patientId', patient.id)
            bill.setdefault('doctorName', doctor_name)
            bill.setdefault('date', today)
            return Bill.model_validate(bill)
        except (AssistantUnavailable, ValueError, ValidationError) as e:
            logger.error("Billing AI error: %s", e)
            return None

    def interpret_voice_command(self, command: str, context: str) -> str:
        prompt = (
            f'Hospital Voice Assistant. Context: {context}. User Command: "{command}". '
            'Summarize accurately or describe update needed. 15 words max.'
        )
        try:
            return self._generate(self.model, prompt) or VOICE_EMPTY
        except AssistantUnavailable as e:
            logger.error("Voice AI error: %s", e)
            return VOICE_FALLBACK

    def answer_operational_query(self, query: str, context: str) -> str:
        try:
            text = self._generate(
                self.pro_model, f'Context: {context}\n\nQuery: {query}',
                system_instruction=(
                    'You are an AI Hospital Operations Executive. '
                    'Provide systematic and data-driven answers.'
                ),
            )
            return text or QUERY_EMPTY
        except AssistantUnavailable as e:
            logger.error("Admin query AI error: %s", e)
            return QUERY_FALLBACK


class OfflineAssistant:
    """Deterministic stand-in used when no generative service is configured"""

    def __init__(self, clock: Callable[[], datetime] = _utcnow, interpreter: CommandInterpreter = None):
        self.clock = clock
        self.interpreter = interpreter or CommandInterpreter()
        self._invoice_seq = itertools.count(10001)

    def suggest_medications(self, diagnosis: str, history: str) -> List[MedicationSuggestion]:
        # No clinical knowledge offline; an empty list is the neutral answer
        return []

    def synthesize_bill(self, patient: Patient, doctor_name: str, lines: List[Dict]) -> Optional[Bill]:
        items = []
        for l in lines:
            total = round(l['quantity'] * l['unit_price'], 2)
            items.append({'name': l['medicine_name'], 'quantity': l['quantity'],
                          'unit_price': l['unit_price'], 'total': total})
        subtotal = round(sum(i['total'] for i in items), 2)
        gst = round(subtotal * GST_RATE, 2)
        return Bill(
            id=f'INV-{next(self._invoice_seq)}',
            patient_id=patient.id,
            patient_name=patient.name,
            doctor_name=doctor_name,
            date=self.clock().date().isoformat(),
            items=items,
            subtotal=subtotal,
            gst=gst,
            grand_total=round(subtotal + gst, 2),
        )

    def _summarize(self, text: str, context: str) -> str:
        parsed = self.interpreter.parse_query(text)
        label = INTENT_SUMMARIES.get(parsed['intent'])
        if label is None:
            return VOICE_EMPTY
        if parsed['entities'].get('patient_name'):
            label = f"{label}: {parsed['entities']['patient_name']}"
        return f'{label}. {context}' if context else f'{label}.'

    def interpret_voice_command(self, command: str, context: str) -> str:
        return _clip_words(self._summarize(command, context), 15)

    def answer_operational_query(self, query: str, context: str) -> str:
        answer = self._summarize(query, context)
        return QUERY_EMPTY if answer == VOICE_EMPTY else answer


def build_assistant(api_key: Optional[str] = None, clock: Callable[[], datetime] = _utcnow, **options):
    """Gemini when a key is configured, the offline heuristics otherwise"""
    if api_key:
        return GeminiAssistant(api_key, clock=clock, **options)
    logger.warning("No Gemini API key configured, using offline assistant")
    return OfflineAssistant(clock=clock)
