"""Create or update a profile and print a bearer token for it.

This is the bootstrap path for the first admin: roles above driver can only
be granted by an admin through the API.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("user_id", help="Opaque user id from the identity service")
    ap.add_argument("--name", default=None, help="Display name (required when the profile is new)")
    ap.add_argument("--role", choices=["passenger", "driver", "admin"], default=None, help="Set the profile role")
    ap.add_argument("--token-only", action="store_true", help="Do not touch the profile store")
    args = ap.parse_args()

    from taxiinsta.core.auth_provider import auth_provider

    if not args.token_only:
        from taxiinsta.db import SessionLocal, init_db
        from taxiinsta.models import Profile

        init_db()
        db = SessionLocal()
        try:
            p = db.get(Profile, args.user_id)
            if p is None:
                if not args.name:
                    print("--name is required for a new profile", file=sys.stderr)
                    return 2
                p = Profile(id=args.user_id, display_name=args.name, role=args.role or "passenger")
                db.add(p)
            else:
                if args.name:
                    p.display_name = args.name
                if args.role:
                    p.role = args.role
            db.commit()
            print(f"PROFILE {p.id} role={p.role}", file=sys.stderr)
        finally:
            db.close()

    print(auth_provider.issue_token(args.user_id))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
