"""
Usage: python import_collection_items.py path/to/items.csv COLLECTION_ADDRESS CREATOR_WALLET [PRICE] [NAME]
Creates the collection if it does not exist yet, then bulk-inserts one unminted item per CSV row.
Recognised columns: name, image_uri/image_url/image, metadata_uri/uri, attributes (JSON list).
"""
import asyncio
import csv
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "backend"))
from db_models import init_db  # type: ignore  # noqa: E402
from main import auth_settings, build_container  # type: ignore  # noqa: E402
from mint_errors import NotFoundError  # type: ignore  # noqa: E402


def parse_attributes(raw):
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    return value if isinstance(value, list) else []


def read_rows(csv_path: str):
    rows = []
    with open(csv_path, newline="", encoding="utf-8") as f:
        for r in csv.DictReader(f):
            rows.append(
                {
                    "name": r.get("name") or r.get("Name"),
                    "image_uri": r.get("image_uri") or r.get("image_url") or r.get("Image URL") or r.get("image"),
                    "metadata_uri": r.get("metadata_uri") or r.get("uri"),
                    "attributes": parse_attributes(r.get("attributes")),
                }
            )
    return rows


async def main(csv_path: str, address: str, creator: str, price: float, name: str):
    container = build_container(auth_settings)
    await init_db(container.engine)
    try:
        try:
            collection = await container.catalog.get_by_address(address)
        except NotFoundError:
            collection = await container.catalog.create_collection(name, address, creator, price)
        rows = read_rows(csv_path)
        added = await container.catalog.add_items(collection.id, rows)
        print(f"Collection '{collection.name}' ({address}) → new_items={added}, csv={csv_path}")
    finally:
        await container.close()


if __name__ == "__main__":
    if len(sys.argv) < 4:
        print(__doc__)
        sys.exit(1)
    price_arg = float(sys.argv[4]) if len(sys.argv) > 4 else 0.0
    name_arg = sys.argv[5] if len(sys.argv) > 5 else Path(sys.argv[1]).stem
    asyncio.run(main(sys.argv[1], sys.argv[2], sys.argv[3], price_arg, name_arg))
