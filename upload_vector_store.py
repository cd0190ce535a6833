"""Upload every file in a docs directory into an OpenAI vector store.

Usage:
    export OPENAI_API_KEY=sk-...
    python upload_vector_store.py [docs_dir] [--name NAME] [--vector-store-id ID]

Creates a new vector store unless an existing id is given (flag or
OPENAI_VECTOR_STORE_ID), then prints the id to configure for the chat server.
"""
import os
import sys
import pathlib
import argparse
from typing import List, Optional

from dotenv import load_dotenv
from openai import OpenAI, OpenAIError

load_dotenv()

DEFAULT_DOCS_DIR = "docs"
DEFAULT_STORE_NAME = "ask-my-docs-store"


def list_doc_files(docs_dir: pathlib.Path) -> List[pathlib.Path]:
    if not docs_dir.is_dir():
        return []
    return sorted(p for p in docs_dir.iterdir() if p.is_file())


def ensure_vector_store(client: OpenAI, name: str, vector_store_id: Optional[str] = None) -> str:
    if vector_store_id:
        print(f"Using existing vector store {vector_store_id}")
        return vector_store_id
    store = client.vector_stores.create(name=name)
    print(f"Created vector store {store.name} ({store.id})")
    return store.id


def upload_dir(client: OpenAI, vector_store_id: str, docs_dir: pathlib.Path) -> List[str]:
    files = list_doc_files(docs_dir)
    if not files:
        print(f"No files found in {docs_dir} - add PDFs/MD/TXT and rerun.")
        return []

    print(f"Uploading {len(files)} file(s) to vector store {vector_store_id} ...")
    uploaded = []
    for path in files:
        with path.open("rb") as fh:
            uploaded.append(client.files.create(file=fh, purpose="assistants"))

    file_ids = [f.id for f in uploaded]
    client.vector_stores.file_batches.create(vector_store_id=vector_store_id, file_ids=file_ids)
    print("Uploaded files:", ", ".join(f"{f.filename} ({f.id})" for f in uploaded))
    return file_ids


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("docs_dir", nargs="?", default=DEFAULT_DOCS_DIR)
    parser.add_argument("--name", default=DEFAULT_STORE_NAME, help="name for a newly created vector store")
    parser.add_argument(
        "--vector-store-id",
        default=os.getenv("OPENAI_VECTOR_STORE_ID"),
        help="add files to this vector store instead of creating one",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        print("Missing OPENAI_API_KEY", file=sys.stderr)
        return 1

    client = OpenAI(api_key=api_key)
    try:
        store_id = ensure_vector_store(client, args.name, args.vector_store_id)
        upload_dir(client, store_id, pathlib.Path(args.docs_dir).resolve())
    except OpenAIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\nOPENAI_VECTOR_STORE_ID: {store_id}")
    print("Set this as OPENAI_VECTOR_STORE_ID in the chat server's environment.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
