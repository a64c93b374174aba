from pathlib import Path
from typing import Dict, List
import json
import jsonschema

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


def _load_schema(doc_type: str) -> dict:
    schema_path = SCHEMA_DIR / f"{doc_type}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def collect_field_errors(data: dict, doc_type: str) -> Dict[str, List[str]]:
    """
    Every schema violation, keyed by the top-level field it concerns.
    Missing required fields are reported under their own name; errors that
    belong to no field (e.g. unexpected keys) go under "_record".
    """
    schema = _load_schema(doc_type)
    validator_cls = jsonschema.validators.validator_for(schema)
    validator = validator_cls(schema)

    errors: Dict[str, List[str]] = {}
    for err in validator.iter_errors(data):
        if err.validator == "required":
            for name in err.validator_value:
                if isinstance(err.instance, dict) and name not in err.instance:
                    msgs = errors.setdefault(name, [])
                    if "is required" not in msgs:
                        msgs.append("is required")
            continue

        field = str(err.absolute_path[0]) if err.absolute_path else "_record"
        errors.setdefault(field, []).append(err.message)
    return errors
