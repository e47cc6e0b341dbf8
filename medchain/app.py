import logging

from flask import Flask, jsonify, request
from pydantic import ValidationError

from . import analytics
from .ai_service import CommandInterpreter, build_assistant
from .config import Config
from .exceptions import InsufficientStockError, InvalidTransitionError, NotFoundError
from .fixtures import load_fixture
from .models import BillWindow, dump_all
from .state import (
    AddDoctor, AddInventoryItem, AddPatient, AddStaff, AddVendor, AuthorizeOrder,
    CompleteMedicationRequest, CreateMedicationRequest, DeleteBill, RaisePurchaseOrder,
    SetRole, Store,
)


# ---------------- HELPER FUNCTIONS ----------------
def _notifications(outcome):
    return [n.to_json() for n in outcome.notifications]


def _payload():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValueError('JSON object body required')
    return data


def _admin_context(snapshot):
    value = analytics.inventory_value(snapshot.inventory)
    deficits = analytics.deficits(snapshot.requests, snapshot.inventory)
    pending = analytics.pending_orders(snapshot.orders)
    return f'Rev: ₹{value}, Deficits: {len(deficits)}, PendingOrders: {len(pending)}'


def _voice_context(snapshot):
    return (f'Role: {snapshot.role.value}, Patients: {len(snapshot.patients)}, '
            f'Inventory: {len(snapshot.inventory)}')


def _intent_results(intent, entities, snapshot, now):
    """Structured data backing an interpreted command"""
    if intent in ('inventory_health', 'low_stock'):
        return dump_all(analytics.low_stock(snapshot.inventory))
    if intent == 'expiring':
        return dump_all(analytics.expiring_soon(snapshot.inventory, now)
                        + analytics.wastage(snapshot.inventory, now))
    if intent == 'deficits':
        return dump_all(analytics.deficits(snapshot.requests, snapshot.inventory))
    if intent == 'pending_orders':
        return dump_all(analytics.pending_orders(snapshot.orders))
    if intent == 'staff_on_duty':
        return dump_all(analytics.on_duty_staff(snapshot.staff))
    if intent == 'patient_search':
        return dump_all(analytics.search_patients(snapshot.patients, entities.get('patient_name', '')))
    return []


def create_app(test_config=None, assistant=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.from_prefixed_env('MEDCHAIN')
    if test_config:
        app.config.update(test_config)
    app.json.sort_keys = False

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    logging.getLogger('medchain').setLevel(app.config['LOG_LEVEL'])

    store = Store(load_fixture(app.config['FIXTURE_PATH']), clock=clock)
    if assistant is None:
        assistant = build_assistant(
            app.config['GEMINI_API_KEY'],
            clock=store.now,
            model=app.config['GEMINI_MODEL'],
            pro_model=app.config['GEMINI_PRO_MODEL'],
            base_url=app.config['GEMINI_BASE_URL'],
            timeout=float(app.config['ASSISTANT_TIMEOUT']),
            max_retries=int(app.config['ASSISTANT_MAX_RETRIES']),
        )
    interpreter = CommandInterpreter()
    app.extensions['medchain'] = {'store': store, 'assistant': assistant}
    app.logger.info("MedChain ready with %s", type(assistant).__name__)

    # ---------------- ERROR HANDLERS ----------------
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(InvalidTransitionError)
    @app.errorhandler(InsufficientStockError)
    def handle_conflict(e):
        return jsonify({'error': str(e)}), 409

    @app.errorhandler(ValidationError)
    def handle_invalid_payload(e):
        details = [{'loc': [str(p) for p in err['loc']], 'msg': err['msg']} for err in e.errors()]
        return jsonify({'error': 'invalid payload', 'details': details}), 400

    @app.errorhandler(ValueError)
    def handle_bad_request(e):
        return jsonify({'error': str(e)}), 400

    # ---------------- SESSION ----------------
    @app.route('/api/state')
    def api_state():
        return jsonify(store.snapshot.to_json())

    @app.route('/api/role', methods=['POST'])
    def api_set_role():
        outcome = store.dispatch(SetRole.model_validate(_payload()))
        return jsonify({'ok': True, 'role': outcome.snapshot.role.value})

    @app.route('/api/analytics')
    def api_analytics():
        return jsonify(analytics.dashboard(store.snapshot, store.now()))

    # ---------------- ADMIN ENDPOINTS ----------------
    @app.route('/api/inventory')
    def api_list_inventory():
        items = analytics.search_inventory(store.snapshot.inventory, request.args.get('q', ''))
        return jsonify(dump_all(items))

    @app.route('/api/inventory', methods=['POST'])
    def api_create_inventory():
        outcome = store.dispatch(AddInventoryItem.model_validate(_payload()))
        return jsonify({'ok': True, 'item': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/inventory/alerts')
    def api_inventory_alerts():
        alerts = analytics.stock_alerts(store.snapshot.inventory, store.now())
        return jsonify({
            'alerts': alerts,
            'count': len(alerts)
        })

    @app.route('/api/staff', methods=['POST'])
    def api_create_staff():
        outcome = store.dispatch(AddStaff.model_validate(_payload()))
        return jsonify({'ok': True, 'staff': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/doctors', methods=['POST'])
    def api_create_doctor():
        outcome = store.dispatch(AddDoctor.model_validate(_payload()))
        return jsonify({'ok': True, 'doctor': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/vendors', methods=['POST'])
    def api_create_vendor():
        outcome = store.dispatch(AddVendor.model_validate(_payload()))
        return jsonify({'ok': True, 'vendor': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/orders')
    def api_list_orders():
        return jsonify(dump_all(store.snapshot.orders))

    @app.route('/api/orders/<order_id>/<action>', methods=['POST'])
    def api_authorize_order(order_id, action):
        outcome = store.dispatch(AuthorizeOrder(order_id=order_id, action=action))
        order = outcome.snapshot.find_order(order_id)
        return jsonify({'ok': True, 'order': order.to_json(),
                        'notifications': _notifications(outcome)})

    # ---------------- RECEPTION ENDPOINTS ----------------
    @app.route('/api/patients')
    def api_list_patients():
        patients = analytics.search_patients(store.snapshot.patients, request.args.get('q', ''))
        return jsonify(dump_all(patients))

    @app.route('/api/patients', methods=['POST'])
    def api_create_patient():
        outcome = store.dispatch(AddPatient.model_validate(_payload()))
        return jsonify({'ok': True, 'patient': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/requests', methods=['POST'])
    def api_create_request():
        data = _payload()
        snapshot = store.snapshot
        patient = snapshot.find_patient(data.get('patientId', ''))
        if patient is None:
            raise NotFoundError('Patient', data.get('patientId', ''))

        items = []
        for line in data.get('items') or []:
            item = snapshot.find_item(str(line.get('medicineId', '')))
            if item is None:
                raise NotFoundError('Medicine', str(line.get('medicineId', '')))
            items.append({'medicineId': item.id, 'medicineName': item.name,
                          'quantity': line.get('quantity', 1)})

        outcome = store.dispatch(CreateMedicationRequest(
            patient_id=patient.id, patient_name=patient.name, items=items))
        return jsonify({'ok': True, 'request': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    # ---------------- PHARMACY ENDPOINTS ----------------
    @app.route('/api/requests')
    def api_list_requests():
        snapshot = store.snapshot
        status = request.args.get('status')
        out = []
        for req in snapshot.requests:
            if status and req.status.value != status.upper():
                continue
            row = req.to_json()
            row['hasShortfall'] = analytics.request_has_shortfall(req, snapshot.inventory)
            out.append(row)
        return jsonify(out)

    @app.route('/api/requests/<req_id>/fulfill', methods=['POST'])
    def api_fulfill_request(req_id):
        outcome = store.fulfill(req_id, assistant)
        return jsonify({
            'ok': True,
            'request': outcome.snapshot.find_request(req_id).to_json(),
            'bill': outcome.created.to_json() if outcome.created else None,
            'notifications': _notifications(outcome),
        })

    @app.route('/api/requests/<req_id>/complete', methods=['POST'])
    def api_complete_request(req_id):
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        elif not isinstance(data, dict):
            raise ValueError('JSON object body required')
        data['reqId'] = req_id
        outcome = store.dispatch(CompleteMedicationRequest.model_validate(data))
        return jsonify({'ok': True, 'request': outcome.snapshot.find_request(req_id).to_json(),
                        'notifications': _notifications(outcome)})

    @app.route('/api/stock-gap')
    def api_stock_gap():
        snapshot = store.snapshot
        return jsonify(dump_all(analytics.stock_gap(snapshot.requests, snapshot.inventory)))

    @app.route('/api/orders', methods=['POST'])
    def api_raise_order():
        data = _payload()
        medicine_id = data.pop('medicineId', None)
        if medicine_id is not None:
            item = store.snapshot.find_item(str(medicine_id))
            if item is None:
                raise NotFoundError('Medicine', str(medicine_id))
            data.setdefault('itemName', item.name)
            data.setdefault('cost', item.cost_per_unit * int(data.get('quantity', 0)))
        outcome = store.dispatch(RaisePurchaseOrder.model_validate(data))
        return jsonify({'ok': True, 'order': outcome.created.to_json(),
                        'notifications': _notifications(outcome)}), 201

    @app.route('/api/bills')
    def api_list_bills():
        window = BillWindow(request.args.get('window', 'all'))
        bills = analytics.bills_in_window(store.snapshot.bills, window, store.now(),
                                          request.args.get('q', ''))
        return jsonify({'bills': dump_all(bills), 'total': analytics.bills_total(bills)})

    @app.route('/api/bills/<bill_id>', methods=['DELETE'])
    def api_delete_bill(bill_id):
        outcome = store.dispatch(DeleteBill(bill_id=bill_id))
        return jsonify({'ok': True, 'notifications': _notifications(outcome)})

    # ---------------- AI ENDPOINTS ----------------
    @app.route('/api/ai/suggest', methods=['POST'])
    def ai_suggest_medications():
        data = _payload()
        snapshot = store.snapshot
        patient = snapshot.find_patient(data.get('patientId', ''))
        if patient is None:
            raise NotFoundError('Patient', data.get('patientId', ''))

        history = ', '.join(m.medicine_name for m in patient.medication_history) or 'None'
        suggestions = assistant.suggest_medications(patient.diagnosis, history)
        out = []
        for suggestion, item in analytics.match_suggestions(suggestions, snapshot.inventory):
            row = suggestion.to_json()
            row['inventoryId'] = item.id if item else None
            row['inStock'] = bool(item and item.stock_level > 0)
            out.append(row)
        return jsonify({'patientId': patient.id, 'diagnosis': patient.diagnosis, 'suggestions': out})

    @app.route('/api/ai/query', methods=['POST'])
    def ai_operational_query():
        data = _payload()
        query = (data.get('query') or '').strip()
        if not query:
            return jsonify({'error': 'query required'}), 400
        context = _admin_context(store.snapshot)
        return jsonify({'query': query, 'answer': assistant.answer_operational_query(query, context)})

    @app.route('/api/ai/voice', methods=['POST'])
    def ai_voice_command():
        data = request.get_json(silent=True) or {}
        command = (data.get('command') or 'Check inventory health.').strip()
        snapshot = store.snapshot
        parsed = interpreter.parse_query(command)
        return jsonify({
            'command': command,
            'response': assistant.interpret_voice_command(command, _voice_context(snapshot)),
            'intent': parsed['intent'],
            'entities': parsed['entities'],
            'results': _intent_results(parsed['intent'], parsed['entities'], snapshot, store.now()),
        })

    return app


# ---------------- MAIN ----------------
if __name__ == '__main__':
    app = create_app()
    app.run(debug=True, host='127.0.0.1', port=5000)
