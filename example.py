"""Example usage of the typed_records library."""

from typed_records import (
    Repo,
    Schema,
    SQLiteAdapter,
    assoc,
    cast,
    count,
    field,
    from_,
    pipe,
    stage,
    traverse_errors,
    unique_constraint,
    validate_format,
    validate_length,
    validate_required,
)

# Define the record schemas using the DSL
declarations = """
schema User {
    username: string,
    email: string,
    age: integer,
    password: string virtual,
    has_many posts: Post,
    timestamps
}

schema Post {
    title: string,
    views: integer = 0,
    belongs_to author: User foreign_key user_id
}
"""

tables = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT,
    age INTEGER,
    inserted_at TEXT,
    updated_at TEXT
);
CREATE UNIQUE INDEX unique_usernames ON users (username);
CREATE TABLE posts (
    id INTEGER PRIMARY KEY,
    title TEXT,
    views INTEGER NOT NULL DEFAULT 0,
    user_id INTEGER REFERENCES users (id)
);
"""


def registration(user, params):
    return pipe(
        cast(user, params, ["username", "email", "age", "password"]),
        stage(validate_required, ["username", "email", "password"]),
        stage(validate_format, "email", r"@"),
        stage(validate_length, "password", min=8),
        stage(unique_constraint, "username", name="unique_usernames"),
    )


schema = Schema.parse(declarations)

with SQLiteAdapter() as adapter:
    adapter.executescript(tables)
    repo = Repo(adapter, schema.registry, timeout=5)

    signups = [
        {"username": "alice", "email": "alice@example.com", "age": "30", "password": "correct horse"},
        {"username": "bob", "email": "bob-at-example", "age": "25", "password": "short"},
        {"username": "charlie", "email": "charlie@example.com", "age": "35", "password": "battery staple"},
        {"username": "alice", "email": "alice2@example.com", "age": "41", "password": "another secret"},
    ]

    print("Registering users...")
    for params in signups:
        result = repo.insert(registration(schema.new("User"), params))
        if result.ok:
            print(f"  Created: {result.entity}")
        else:
            print(f"  Rejected {params['username']}: {traverse_errors(result.changeset)}")

    alice = repo.get("User", 1)
    for title in ["Hello", "Second thoughts", "On records"]:
        repo.insert(cast(schema.new("Post"), {"title": title, "user_id": alice.id}, ["title", "user_id"]))

    print("\nUsers aged 30 or more:")
    for user in repo.all(from_("User", as_="u").where(field("u.age").ge(30)).order_by("u.username")):
        print(f"  {user.username}, age {user.age}")

    print("\nPosts per author:")
    query = (
        from_("User", as_="u")
        .join(assoc("u", "posts"), as_="p", kind="left")
        .group_by("u.username")
        .select("u.username", count("p.id"))
        .order_by("u.username")
    )
    for row in repo.all(query):
        print(f"  {row['username']}: {row['count_id']}")

    compiled = repo.compiler.compile(query)
    print("\nCompiled SQL:")
    print(f"  {compiled.text}")
    print(f"  parameters: {compiled.parameters}")
