"""FaceGroup CLI: webhook server plus store maintenance commands."""

import argparse
import json
import sys


def main():
    parser = argparse.ArgumentParser(
        prog="facegroup",
        description="FaceGroup: S3 upload → face grouping service",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the webhook and query API")
    serve_parser.add_argument("--port", type=int, default=4000, help="Port (default: 4000)")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")

    subparsers.add_parser("init-db", help="Create store schema and ensure the Rekognition collection exists")

    list_parser = subparsers.add_parser("list", help="Print stored faces as JSON")
    list_parser.add_argument("--all", action="store_true", help="Include every collection")

    rename_parser = subparsers.add_parser("rename", help="Rename a face and every face in its group")
    rename_parser.add_argument("face_id")
    rename_parser.add_argument("name")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _dispatch(args)


def _setup_logging():
    import logging

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _dispatch(args):
    """Route CLI commands."""
    from facegroup.hub.config_defaults import load_config

    _setup_logging()
    config = load_config()

    if args.command == "serve":
        _serve(config, args.host, args.port)
    elif args.command == "init-db":
        _init_db(config)
    elif args.command == "list":
        _list(config, include_all=args.all)
    elif args.command == "rename":
        sys.exit(_rename(config, args.face_id, args.name))
    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


def _serve(config, host: str, port: int):
    """Start the FaceGroup hub behind uvicorn."""
    import logging

    import uvicorn

    from facegroup.hub.api import create_api
    from facegroup.hub.core import FaceGroupHub

    logger = logging.getLogger("facegroup.serve")
    logger.info("FaceGroup listening on http://%s:%d (webhook: /s3-event)", host, port)

    hub = FaceGroupHub(config)
    app = create_api(hub)
    uvicorn.run(app, host=host, port=port, log_level="info", access_log=True)


def _init_db(config):
    from facegroup.hub.core import build_matcher, build_store

    store = build_store(config)
    store.initialize()
    print(f"Store ready: {type(store).__name__}")
    if config.get("ingest.bucket"):
        created = build_matcher(config).ensure_collection()
        state = "created" if created else "exists"
        print(f"Collection {config['faces.collection_id']}: {state}")


def _list(config, include_all: bool = False):
    from facegroup.faces.service import FaceQueryService
    from facegroup.hub.core import build_store

    store = build_store(config)
    store.initialize()
    collection = None if include_all else config["faces.collection_id"]
    faces = FaceQueryService(store).list_faces(collection)
    print(json.dumps([f.to_api() for f in faces], indent=2))


def _rename(config, face_id: str, name: str) -> int:
    from facegroup.faces.errors import FaceGroupError
    from facegroup.faces.service import FaceQueryService
    from facegroup.hub.core import build_store

    store = build_store(config)
    store.initialize()
    try:
        result = FaceQueryService(store).rename_face(face_id, name)
    except FaceGroupError as e:
        print(f"Rename failed: {e}", file=sys.stderr)
        return 1
    print(f"Updated {len(result.updated)} faces in group {result.group_id}")
    return 0


if __name__ == "__main__":
    main()
