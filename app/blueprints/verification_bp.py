"""
Verification Result Blueprint.

Routes:
  POST   /items/<iid>/verification-results   – record a producer's result
  GET    /items/<iid>/verification-results   – results for the item, oldest first
"""

from flask import Blueprint, jsonify

from app.auth import current_actor
from app.blueprints import json_body
from app.services import verification_service

verification_bp = Blueprint("verification_bp", __name__, url_prefix="/api/v1")


@verification_bp.route("/items/<int:iid>/verification-results", methods=["POST"])
def record_result(iid):
    """Body: { match_status, document_ref?, field_name?, expected_value?, actual_value?,
    confidence_score?, flagged_issues? }"""
    data = json_body()
    result = verification_service.record_result(
        iid, current_actor(),
        match_status=data.get("match_status"),
        document_ref=data.get("document_ref"),
        field_name=data.get("field_name"),
        expected_value=data.get("expected_value"),
        actual_value=data.get("actual_value"),
        confidence_score=data.get("confidence_score"),
        flagged_issues=data.get("flagged_issues"),
    )
    return jsonify(result), 201


@verification_bp.route("/items/<int:iid>/verification-results", methods=["GET"])
def list_results(iid):
    return jsonify(verification_service.results_for_item(iid, current_actor()))
