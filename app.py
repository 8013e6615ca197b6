# app.py
import logging
import os

import requests
from dotenv import load_dotenv
from flask import Flask, jsonify, request, session
from werkzeug.exceptions import RequestEntityTooLarge

from ai_parser import ExtractionError, extract_receipt
from bill_state import BillState, BillStore
from split_calc import BillError, compute_even_split
from utils import format_money, summary_to_json

load_dotenv()

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("FLASK_SECRET_KEY") or os.urandom(32)
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# one bill per browser session, replacing a process-wide "last parsed items"
bills = BillStore(
    max_bills=int(os.getenv("MAX_SESSIONS", "1000")),
    idle_seconds=float(os.getenv("SESSION_IDLE_SECONDS", "3600")),
)


def current_bill(create=True) -> BillState:
    """
    The session's bill. Read-only routes pass create=False so a visitor
    without a stored bill gets an unsaved empty one.
    """
    if not create:
        return bills.peek(session.get("bill_id")) or BillState()
    if "bill_id" not in session:
        session["bill_id"] = BillStore.new_session_id()
    return bills.get(session["bill_id"])


def bill_response(bill: BillState, status=200, **extra):
    body = bill.to_dict()
    body["summary"] = summary_to_json(bill.summary())
    body.update(extra)
    return jsonify(body), status


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


@app.errorhandler(BillError)
@app.errorhandler(ValueError)
def handle_bad_input(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(ExtractionError)
def handle_extraction_error(e):
    return jsonify({"error": str(e)}), 422


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    return jsonify({"error": f"Upload too large (limit {app.config['MAX_CONTENT_LENGTH']} bytes)."}), 413


@app.errorhandler(requests.RequestException)
def handle_ai_service_error(e):
    logger.warning("AI service call failed: %s", e)
    return jsonify({"error": f"Error processing image: {e}. Please ensure the image is clear and contains a bill."}), 502


@app.route('/health')
def health():
    return 'ok'


@app.route('/process', methods=['POST'])
def process():
    # expects multipart form-data with an 'image' file
    if 'image' not in request.files:
        return jsonify({'error': 'image missing'}), 400
    f = request.files['image']
    if f.filename == '':
        return jsonify({'error': 'No selected file'}), 400

    # the declared type is only a fallback for formats Pillow has no MIME name for
    extraction = extract_receipt(f.read(), f.mimetype if f.mimetype.startswith('image/') else None)
    bill = current_bill()
    auto_rate = bill.load_extraction(extraction)
    return bill_response(bill, autoTaxRate=None if auto_rate is None else str(auto_rate))


@app.route('/bill', methods=['GET'])
def get_bill():
    return bill_response(current_bill(create=False))


@app.route('/bill', methods=['DELETE'])
def reset_bill():
    bills.discard(session.pop("bill_id", None))
    return bill_response(BillState())


@app.route('/bill/tax', methods=['PUT'])
def set_tax():
    bill = current_bill()
    bill.set_tax_rate(json_body().get('taxRate'))
    return bill_response(bill)


@app.route('/bill/tip', methods=['PUT'])
def set_tip():
    data = json_body()
    bill = current_bill()
    bill.set_tip(data.get('kind'), data.get('value'))
    return bill_response(bill)


@app.route('/bill/people', methods=['POST'])
def add_person():
    data = request.get_json(silent=True) or {}
    bill = current_bill()
    bill.add_person(data.get('name') if isinstance(data, dict) else None)
    return bill_response(bill, 201)


@app.route('/bill/people/<int:person_id>', methods=['PATCH'])
def rename_person(person_id):
    name = json_body().get('name')
    if not isinstance(name, str):
        raise ValueError('"name" must be a string')
    bill = current_bill()
    bill.rename_person(person_id, name)
    return bill_response(bill)


@app.route('/bill/people/<int:person_id>', methods=['DELETE'])
def remove_person(person_id):
    bill = current_bill()
    removed = bill.remove_person(person_id)
    return bill_response(bill, removed=removed)


@app.route('/bill/people/<int:person_id>/claims', methods=['POST'])
def toggle_claim(person_id):
    data = json_body()
    claimed = data.get('claimed')
    if claimed is not None and not isinstance(claimed, bool):
        raise ValueError('"claimed" must be true or false')
    bill = current_bill()
    bill.toggle_claim(person_id, data.get('index'), claimed)
    return bill_response(bill)


@app.route('/summary', methods=['POST'])
def summary():
    # stateless: the whole bill travels in the request body
    bill = BillState.from_dict(json_body())
    return jsonify(summary_to_json(bill.summary()))


@app.route('/split', methods=['POST'])
def split_bill():
    data = json_body()
    if 'people' not in data:
        return jsonify({'error': 'Missing "people" parameter'}), 400

    if data.get('items') is not None:
        bill = BillState.from_dict({'items': data['items'], 'taxRate': data.get('taxRate'), 'tip': data.get('tip')})
    else:
        bill = current_bill(create=False)
    if not bill.items:
        return jsonify({'error': 'No receipt items found. Upload a receipt first.'}), 400

    result = compute_even_split(bill.items, data['people'], bill.tax.rate, bill.tip)
    return jsonify({
        'total': format_money(result['total']),
        'people': result['people'],
        'per_person': format_money(result['per_person']),
    })


if __name__ == '__main__':
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv('FLASK_PORT', 5000))
    app.run(host='0.0.0.0', port=port)
