# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pathmux",
#     "granian[uvloop]>=2.6.0,<3.0.0",
# ]
#
# [tool.uv.sources]
# pathmux = { path = "../", editable = true }
# ///
"""RSGI server demo.

Fully functional web server using Granian + pathmux Router.
"""

import asyncio
import json
import logging
import sqlite3
import time
from json.decoder import JSONDecodeError

from granian.server.embed import Server

from pathmux import Context, Router
from pathmux.rsgi import Handler

ADDRESS = "127.0.0.1"
PORT = 8000

logger = logging.getLogger("server")

_db = sqlite3.connect(":memory:")
_db.cursor().executescript("""
CREATE TABLE IF NOT EXISTS user (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS product (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);
""")


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    router = Router(server_name="pathmux-demo")
    router.use(log_request)
    router.get("/", home)
    router.mount_at("/user", user_router(_db))
    router.mount_at("/product", product_router(_db))
    router.finalize()
    logger.info("routes:\n%s", router.format_routes())

    server = Server(router, address=ADDRESS, port=PORT, log_access=True)
    try:
        await server.serve()
    except asyncio.CancelledError:
        pass


def log_request(ctx: Context) -> None:
    logger.info("%s %s at %.3f", ctx.request.method, ctx.request.path, time.time())


def home(ctx: Context) -> None:
    ctx.send("Welcome home")


def require_int_id(ctx: Context) -> bool:
    """Guard: ends the chain with 404 when :id is not an integer."""
    if not ctx.params["id"].isdigit():
        ctx.send("Not found", 404)
        return True
    return False


async def read_name(ctx: Context) -> str | None:
    try:
        payload = json.loads(await ctx.body())
    except JSONDecodeError:
        ctx.send("Invalid json", 422)
        return None
    try:
        return payload["name"]
    except KeyError:
        ctx.send("Missing name", 422)
        return None


def user_router(db: sqlite3.Connection) -> Router:
    router = Router()
    router.get("/", list_rows(db, "user"))
    router.get("/:id", require_int_id, get_row(db, "user"))
    router.post("/", create_row(db, "user"))
    router.patch("/:id", require_int_id, update_user(db))
    return router


def product_router(db: sqlite3.Connection) -> Router:
    router = Router()
    router.get("/", list_rows(db, "product"))
    router.post("/", create_row(db, "product"))
    router.get("/:id", require_int_id, get_row(db, "product"))
    return router


# closure over handler to inject dependencies
def list_rows(db: sqlite3.Connection, table: str) -> Handler:
    def handler(ctx: Context) -> None:
        cur = db.cursor()
        cur.execute(f"SELECT * FROM {table}")  # noqa: S608
        ctx.json([{"id": row[0], "name": row[1]} for row in cur.fetchall()])

    return handler


def get_row(db: sqlite3.Connection, table: str) -> Handler:
    def handler(ctx: Context) -> None:
        cur = db.cursor()
        query = f"SELECT * FROM {table} WHERE id = ?"  # noqa: S608
        cur.execute(query, (int(ctx.params["id"]),))
        result = cur.fetchone()
        if result is None:
            ctx.send("Not found", 404)
            return
        ctx.json({"id": result[0], "name": result[1]})

    return handler


def create_row(db: sqlite3.Connection, table: str) -> Handler:
    async def handler(ctx: Context) -> None:
        name = await read_name(ctx)
        if name is None:
            return
        cur = db.cursor()
        query = f"INSERT INTO {table} (name) VALUES (?) RETURNING *"  # noqa: S608
        cur.execute(query, (name,))
        result = cur.fetchone()
        ctx.json({"id": result[0], "name": result[1]}, 201)

    return handler


def update_user(db: sqlite3.Connection) -> Handler:
    async def handler(ctx: Context) -> None:
        name = await read_name(ctx)
        if name is None:
            return
        cur = db.cursor()
        cur.execute(
            "UPDATE user SET name = ? WHERE id = ? RETURNING *",
            (name, int(ctx.params["id"])),
        )
        result = cur.fetchone()
        if result is None:
            ctx.send("Not found", 404)
            return
        ctx.json({"id": result[0], "name": result[1]})

    return handler


if __name__ == "__main__":
    asyncio.run(main())
