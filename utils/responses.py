from flask import jsonify


def send_response(message: str, data=None, status_code: int = 200):
    return jsonify(success=True, message=message, data=data), status_code


def send_error(message: str, status_code: int, details=None):
    return jsonify(success=False, message=message, errorDetails=details or {}), status_code
