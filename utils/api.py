"""JSON envelope and form binding shared by the API blueprints."""
from datetime import date, datetime
from typing import Any, Dict, Tuple, Type, TypeVar

from flask import jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict

from utils.errors import ValidationFailed


class ApiForm(FlaskForm):
    """Forms bound to JSON bodies; bearer-token requests carry no CSRF token."""

    class Meta:
        csrf = False


FormT = TypeVar("FormT", bound=ApiForm)


class PortalJSONProvider(DefaultJSONProvider):
    @staticmethod
    def default(o):
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


def api_response(data: Any = None, message: str = "OK", status: int = 200):
    return jsonify({"success": True, "message": message, "data": data}), status


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationFailed("Request body must be a JSON object.")
    return payload


def bind_form(form_cls: Type[FormT], payload: Dict[str, Any] | None = None) -> Tuple[FormT, Dict[str, Any]]:
    """Validate the scalar fields of a JSON body through a WTForms form."""
    payload = json_body() if payload is None else payload
    formdata = MultiDict(
        {
            key: value if isinstance(value, str) else str(value)
            for key, value in payload.items()
            if value is not None and not isinstance(value, (list, dict))
        }
    )
    form = form_cls(formdata=formdata)
    if not form.validate():
        raise ValidationFailed("Submitted data is invalid.", details={"fields": form.errors})
    return form, payload
