import json
from typing import Any

from locoformer import DIR_DATA
from locoformer.config import Config


def write_schema(file: str, obj: dict[str, Any]) -> None:
    (DIR_DATA / file).write_text(json.dumps(obj, indent=2))


if __name__ == "__main__":
    write_schema("config.schema.json", Config.model_json_schema())
