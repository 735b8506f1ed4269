"""Create a user in the directory and print a bearer token for it.

    python seed_user.py --name "Campus Admin" --role admin --email admin@campus.edu
"""
import argparse
import asyncio
import uuid

from auth import generate_token
from backend import RedisBackend, create_redis_client
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


async def seed(args) -> str:
    backend = RedisBackend(create_redis_client())
    try:
        user_id = args.user_id or uuid.uuid4().hex
        await backend.save_user(user_id, args.name, avatar=args.avatar, role=args.role, email=args.email)
        logger.info(f"Seeded user {args.name} ({user_id}) with role {args.role}")
        return generate_token(user_id)
    finally:
        await backend.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--name", required=True)
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--avatar", default="")
    parser.add_argument("--role", default="student", choices=["student", "alumni", "admin"])
    parser.add_argument("--email", default="")
    args = parser.parse_args(argv)

    setup_logging("INFO")
    print(asyncio.run(seed(args)))


if __name__ == "__main__":
    main()
