#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

from rfqm.settlement.makers import (
    MAINTENANCE_MODE_CONFIG_KEY,
    MAKER_OFFERINGS_CONFIG_KEY,
    parse_maker_offerings,
)


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw.strip()))
    except ValueError:
        return default


def parse_args() -> argparse.Namespace:
    service_collection = (os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services")
    service_id = (os.getenv("SERVICE_ID", "rfqm-worker").strip() or "rfqm-worker").replace("/", "-")
    default_config_doc = os.getenv("FIRESTORE_CONFIG_DOC") or f"{service_collection}/{service_id}/config"

    parser = argparse.ArgumentParser(
        description="Seed the RFQm runtime config (maker registry, maintenance mode) to Firestore.",
    )

    parser.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=default_config_doc,
        help="Firestore target path. If odd segments are given, a doc id is auto-appended.",
    )
    parser.add_argument(
        "--leaf-doc-id",
        default=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
        help="Doc id to append when --config-doc is a collection path.",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS from env.",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Replace the full document (merge=false).",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )

    parser.add_argument(
        "--schema-version",
        type=int,
        default=max(1, env_int("CONFIG_SCHEMA_VERSION", 1)),
    )
    parser.add_argument(
        "--maker-offerings-file",
        default="",
        help="JSON file with a list of {maker_uri, pairs}. Defaults to RFQM_MAKER_OFFERINGS from env.",
    )
    parser.add_argument(
        "--maintenance-mode",
        action="store_true",
        help="Set maintenance_mode=true. Omit to keep false by default.",
    )

    return parser.parse_args()


def resolve_credentials_path(raw_path: str, repo_root: Path) -> str:
    path = raw_path.strip()
    if not path:
        return ""

    if path.startswith("/app/"):
        mapped = repo_root / path.removeprefix("/app/")
        if mapped.exists():
            return str(mapped)

    return path


def normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    normalized = doc_path.strip("/")
    if not normalized:
        raise ValueError("FIRESTORE_CONFIG_DOC is empty.")

    segments = [part for part in normalized.split("/") if part]
    if len(segments) % 2 == 0:
        return normalized, False

    return f"{normalized}/{leaf_doc_id}", True


def load_maker_offerings(path: str) -> list[dict[str, Any]]:
    raw: Any = Path(path).read_text(encoding="utf-8") if path else os.getenv("RFQM_MAKER_OFFERINGS", "")
    offerings = parse_maker_offerings(raw)
    return [
        {"maker_uri": offering.maker_uri, "pairs": [list(pair) for pair in offering.pairs]}
        for offering in offerings
    ]


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "schema_version": max(1, int(args.schema_version)),
        MAKER_OFFERINGS_CONFIG_KEY: load_maker_offerings(args.maker_offerings_file),
        MAINTENANCE_MODE_CONFIG_KEY: bool(args.maintenance_mode),
    }


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    args = parse_args()

    target_doc_path, path_auto_fixed = normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args)

    if path_auto_fixed:
        print(
            f"[info] --config-doc '{args.config_doc}' is a collection path. "
            f"Using document path '{target_doc_path}'."
        )

    credentials_path = resolve_credentials_path(args.credentials, repo_root)
    if credentials_path:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id)
    doc_ref = client.document(target_doc_path)
    doc_ref.set(payload, merge=not args.replace)

    print("[ok] Firestore config seeded successfully")


if __name__ == "__main__":
    main()
