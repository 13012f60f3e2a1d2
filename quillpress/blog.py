#!/usr/bin/env python3
"""
A small multi-user blog: accounts, private posts, rich-text editing.
"""

import os
import secrets
from datetime import timedelta
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from urllib.parse import urlparse

import click
import nh3
from flask import (
    Flask,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

from quillpress import auth
from quillpress.posts import (
    NotFound,
    create_post,
    delete_post,
    get_post,
    list_posts,
    update_post,
)
from quillpress.store import StoreError, open_store

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("QUILLPRESS_DB", str(ROOT / "blog.sqlite3")))
STORE_BACKEND = os.environ.get("QUILLPRESS_STORE", "sqlite")

SECRET_FILE = ROOT / ".secret_key"
SESSION_MAX_AGE = int(
    os.environ.get("QUILLPRESS_SESSION_MAX_AGE", str(7 * 24 * 3600))
)  # one week
COOKIE_SECURE = os.environ.get("QUILLPRESS_COOKIE_SECURE", "0") == "1"
PASSWORD_HASH_METHOD = os.environ.get("PASSWORD_HASH_METHOD", auth.PASSWORD_METHOD)

SITE_NAME = "quillpress"
EXCERPT_LEN = 220

# what the Quill toolbar can produce – everything else is dropped on render
CLEAN_TAGS = {
    "p", "br", "h1", "h2", "h3", "strong", "em", "u", "s", "a", "img",
    "blockquote", "pre", "code", "ol", "ul", "li", "span", "sub", "sup",
}
CLEAN_ATTRIBUTES = {
    "*": {"class"},
    "a": {"href", "target"},
    "img": {"src", "alt", "width", "height"},
    "li": {"data-list"},
    "pre": {"spellcheck"},
}
CLEAN_URL_SCHEMES = {"http", "https", "mailto", "data"}
IMG_SRC_SCHEMES = {"http", "https", "data"}


def _secret_key() -> str:
    key = os.environ.get("SECRET_KEY")
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


try:
    __version__ = version("quillpress")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=_secret_key(),
    DATABASE=str(DB_FILE),
    STORE_BACKEND=STORE_BACKEND,
    SESSION_MAX_AGE=SESSION_MAX_AGE,
    PASSWORD_HASH_METHOD=PASSWORD_HASH_METHOD,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=COOKIE_SECURE,
    PERMANENT_SESSION_LIFETIME=timedelta(seconds=SESSION_MAX_AGE),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("clean")
def clean_filter(html: str | None) -> Markup:
    """Sanitise stored rich text for display. Storage keeps the raw HTML."""
    return Markup(
        nh3.clean(
            html or "",
            tags=CLEAN_TAGS,
            attributes=CLEAN_ATTRIBUTES,
            url_schemes=CLEAN_URL_SCHEMES,
        )
    )


@app.template_filter("plain")
def plain_filter(html: str | None, limit: int = EXCERPT_LEN) -> str:
    text = Markup(html or "").striptags()
    if len(text) > limit:
        return text[:limit].rstrip() + "…"
    return text


@app.template_filter("img_src")
def img_src_filter(src: str | None) -> str:
    """Drop preview URLs with a scheme an <img> has no business loading."""
    src = (src or "").strip()
    scheme = urlparse(src).scheme.lower()
    if scheme and scheme not in IMG_SRC_SCHEMES:
        return ""
    if scheme == "data" and not src.lower().startswith("data:image/"):
        return ""
    return src


@app.template_filter("ts")
def ts_filter(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC") if dt else ""


app.jinja_env.globals["version"] = __version__
app.jinja_env.globals["site_name"] = SITE_NAME


###############################################################################
# Store
###############################################################################
def get_store():
    if "store" not in g:
        g.store = open_store(app.config)
    return g.store


@app.teardown_appcontext
def close_store(error=None):
    store = g.pop("store", None)
    if store is not None:
        store.close()


def init_db():
    get_store().init_schema()


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it's already there)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")


@app.cli.command("create-user")
@click.option("--username", prompt=True, help="Username (at least 3 characters)")
@click.password_option(help="Password (at least 6 characters)")
def cli_create_user(username: str, password: str):
    """Create an account with the same rules as /register."""
    init_db()
    try:
        ident = auth.register(
            get_store().users,
            username,
            password,
            method=app.config["PASSWORD_HASH_METHOD"],
        )
    except auth.ValidationError as exc:
        raise click.ClickException(" ".join(exc.errors))
    except auth.Conflict as exc:
        raise click.ClickException(str(exc))
    click.secho(f"\n✅  Created {ident.username} (id {ident.id}).", fg="green")


@app.cli.command("purge-sessions")
def cli_purge_sessions():
    """Delete expired server-side sessions."""
    init_db()
    n = get_store().sessions.purge_expired(auth.utc_now())
    click.echo(f"Removed {n} expired session(s).")


###############################################################################
# Authentication
###############################################################################
@app.before_request
def load_identity():
    """Resolve the session cookie to an identity, once per request."""
    g.identity = None
    sid = session.get("sid")
    if not sid:
        return
    store = get_store()
    g.identity = auth.resolve(store.sessions, store.users, sid)
    if g.identity is None:
        session.pop("sid", None)


def login_required(view):
    """
    Route guard. Anonymous users are sent to /login; everyone else gets
    their identity as the view's first argument.
    """

    @wraps(view)
    def wrapped(*args, **kwargs):
        user = g.get("identity")
        if user is None:
            return redirect(url_for("login", next=request.full_path.rstrip("?")))
        return view(user, *args, **kwargs)

    return wrapped


def safe_next(target: str | None) -> str | None:
    """Accept only same-site relative paths as a post-login redirect."""
    if not target or not target.startswith("/") or target.startswith("//"):
        return None
    if "\\" in target:
        return None
    parts = urlparse(target)
    if parts.scheme or parts.netloc:
        return None
    return target


@app.route("/register", methods=["GET", "POST"])
def register():
    if g.identity:
        return redirect(url_for("my_posts"))

    username = ""
    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")
        try:
            ident = auth.register(
                get_store().users,
                username,
                password,
                method=app.config["PASSWORD_HASH_METHOD"],
            )
        except auth.ValidationError as exc:
            for err in exc.errors:
                flash(err)
        except auth.Conflict as exc:
            flash(str(exc))
        except StoreError:
            app.logger.exception("registration failed for %r", username.strip())
            flash("Something went wrong creating your account. Please try again.")
        else:
            app.logger.info("registered %s (id=%s)", ident.username, ident.id)
            flash("Account created – please sign in.")
            return redirect(url_for("login"))

    return render_template_string(
        TEMPL_REGISTER, title="Register", username=username.strip()
    )


@app.route("/login", methods=["GET", "POST"])
def login():
    next_url = request.values.get("next", "")
    if g.identity:
        return redirect(safe_next(next_url) or url_for("my_posts"))

    username = ""
    if request.method == "POST":
        username = request.form.get("username", "")
        store = get_store()
        try:
            ident = auth.verify(
                store.users,
                username,
                request.form.get("password", ""),
                method=app.config["PASSWORD_HASH_METHOD"],
            )
        except auth.AuthError as exc:
            app.logger.warning(
                "failed login for %r (%s)", username.strip(), type(exc).__name__
            )
            flash(exc.public_message)
        else:
            token = auth.bind(
                store.sessions, ident, max_age=app.config["SESSION_MAX_AGE"]
            )
            session.clear()
            session.permanent = True
            session["sid"] = token
            app.logger.info("login %s (id=%s)", ident.username, ident.id)
            return redirect(safe_next(next_url) or url_for("my_posts"))

    return render_template_string(
        TEMPL_LOGIN, title="Sign in", username=username.strip(), next_url=next_url
    )


@app.route("/logout", methods=["GET", "POST"])
def logout():
    # server side first: if this raises, the 500 page is shown and the
    # cookie is left alone rather than pretending the logout happened
    auth.unbind(get_store().sessions, session.get("sid"))
    if g.identity:
        app.logger.info("logout %s (id=%s)", g.identity.username, g.identity.id)
    session.clear()
    return redirect(url_for("login"))


###############################################################################
# Posts
###############################################################################
@app.route("/")
def index():
    return redirect(url_for("my_posts" if g.identity else "login"))


@app.route("/my-posts")
@login_required
def my_posts(user):
    q = request.args.get("q", "").strip()
    rows = list_posts(get_store().posts, user.id, q)
    return render_template_string(TEMPL_LIST, title="My posts", posts=rows, q=q)


@app.route("/posts/new")
@login_required
def new_post(user):
    return render_template_string(
        TEMPL_EDITOR, title="New post", post=None, action=url_for("submit_post")
    )


@app.route("/posts", methods=["POST"])
@login_required
def submit_post(user):
    post = create_post(
        get_store().posts,
        user.id,
        request.form.get("title", ""),
        request.form.get("content", ""),
    )
    if post is not None:
        app.logger.info("post %s created by %s", post.id, user.id)
    return redirect(url_for("my_posts"))


@app.route("/posts/<post_id>")
@login_required
def post_detail(user, post_id):
    post = get_post(get_store().posts, post_id, user.id)
    return render_template_string(TEMPL_POST, title=post.title, post=post)


@app.route("/posts/<post_id>/edit", methods=["GET", "POST"])
@login_required
def edit_post(user, post_id):
    store = get_store()
    if request.method == "POST":
        update_post(
            store.posts,
            post_id,
            user.id,
            request.form.get("title", ""),
            request.form.get("content", ""),
        )
        return redirect(url_for("post_detail", post_id=post_id))

    post = get_post(store.posts, post_id, user.id)
    return render_template_string(
        TEMPL_EDITOR,
        title=f"Edit: {post.title}",
        post=post,
        action=url_for("edit_post", post_id=post.id),
    )


@app.route("/posts/<post_id>/delete", methods=["GET", "POST"])
@login_required
def remove_post(user, post_id):
    store = get_store()
    if request.method == "POST":
        if delete_post(store.posts, post_id, user.id):
            app.logger.info("post %s deleted by %s", post_id, user.id)
        return redirect(url_for("my_posts"))

    post = get_post(store.posts, post_id, user.id)
    return render_template_string(TEMPL_DELETE, title="Delete post?", post=post)


###############################################################################
# Errors + headers
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(NotFound)
def post_not_found(exc):
    # missing and not-yours render the same page
    return not_found(exc)


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page. Flask has already logged the traceback through
    app.logger before this handler runs.
    """
    return render_template_string(TEMPL_500, title="Error"), 500


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title }} · {{ site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:42em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}
a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
img{height:auto;max-width:100%}
blockquote{margin:0 0 2.5rem;padding:.8em 1em;border-left:5px solid #fff;background:#4a4a4a}
pre{background:#4a4a4a;padding:1em;overflow-x:auto}
input,textarea{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box;width:100%}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
button:hover{background:#c9c9c9}
label{display:block;margin-bottom:.5rem;font-weight:600}
.nav{display:flex;gap:1.25rem;align-items:center;flex-wrap:wrap;font-size:.9em;margin-bottom:1rem}
.nav .right{margin-left:auto}
.flash{background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9em;margin-bottom:1rem}
.post{display:flex;gap:1rem;margin-bottom:2rem}
.post img.preview{width:8rem;height:8rem;object-fit:cover;border-radius:4px}
.meta{color:#888;font-size:.75em}
.ql-toolbar.ql-snow,.ql-container.ql-snow{border-color:#555}
.ql-editor{min-height:16rem;color:#c9c9c9}
</style>
<body>
<div style="margin:3rem auto;">
  <h1 style="margin:0 0 1rem;font-size:2.25em;">
    <a href="{{ url_for('index') }}" style="text-decoration:none;">{{ site_name }}</a>
  </h1>
  <nav class="nav" aria-label="Primary">
    {% if g.identity %}
      <a href="{{ url_for('my_posts') }}">My posts</a>
      <a href="{{ url_for('new_post') }}">New post</a>
      <form action="{{ url_for('my_posts') }}" method="get" style="margin:0;flex:1 1 12rem;">
        <input type="search" name="q" aria-label="Search posts" placeholder="Search"
               value="{{ q or '' }}" style="margin:0;">
      </form>
      <span class="right">{{ g.identity.username }} ·
        <a href="{{ url_for('logout') }}">Logout</a></span>
    {% else %}
      <a href="{{ url_for('login') }}">Login</a>
      <a href="{{ url_for('register') }}">Register</a>
    {% endif %}
  </nav>
  {% with msgs = get_flashed_messages() %}
  {% if msgs %}
    <div class="flash" role="status" aria-live="polite">
      {% for m in msgs %}<div>{{ m }}</div>{% endfor %}
    </div>
  {% endif %}
  {% endwith %}
  <main id="main-content" role="main">
"""

TEMPL_EPILOG = """
  </main>
  <footer style="margin-top:3em;font-size:.75em;color:#888;">
    {{ site_name }} v{{ version }}
  </footer>
</div>
</body>
</html>
"""

TEMPL_REGISTER = wrap("""
{% block body %}
<hr>
<h2>Create an account</h2>
<form method="post">
  <label for="username">Username</label>
  <input id="username" name="username" value="{{ username }}" autocomplete="username" required>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="new-password" required>
  <button type="submit">Register</button>
</form>
<p class="meta">Already have an account? <a href="{{ url_for('login') }}">Sign in</a>.</p>
{% endblock %}
""")

TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
<h2>Sign in</h2>
<form method="post">
  <input type="hidden" name="next" value="{{ next_url }}">
  <label for="username">Username</label>
  <input id="username" name="username" value="{{ username }}" autocomplete="username" required>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" required>
  <button type="submit">Sign in</button>
</form>
<p class="meta">No account yet? <a href="{{ url_for('register') }}">Register</a>.</p>
{% endblock %}
""")

TEMPL_LIST = wrap("""
{% block body %}
<hr>
{% if q %}
  <p class="meta">{{ posts|length }} result{{ '' if posts|length == 1 else 's' }} for “{{ q }}”</p>
{% endif %}
{% for p in posts %}
  <article class="post">
    {% set src = p.preview_image|img_src %}
    {% if src %}
      <a href="{{ url_for('post_detail', post_id=p.id) }}">
        <img class="preview" src="{{ src }}" alt="">
      </a>
    {% endif %}
    <div>
      <h3 style="margin:0 0 .5rem;">
        <a href="{{ url_for('post_detail', post_id=p.id) }}">{{ p.title }}</a>
      </h3>
      <p style="margin:0 0 .5rem;">{{ p.content|plain }}</p>
      <small class="meta">{{ p.created_at|ts }}</small>
    </div>
  </article>
{% else %}
  <p>{% if q %}Nothing matches.{% else %}No posts yet –
     <a href="{{ url_for('new_post') }}">write the first one</a>.{% endif %}</p>
{% endfor %}
{% endblock %}
""")

TEMPL_POST = wrap("""
{% block body %}
<hr>
<article>
  <h2 style="margin-top:0">{{ post.title }}</h2>
  <small class="meta">{{ post.created_at|ts }}</small>
  <div class="e-content" style="margin-top:1.5em;">{{ post.content|clean }}</div>
</article>
<p style="margin-top:2rem;">
  <a href="{{ url_for('edit_post', post_id=post.id) }}">Edit</a> ·
  <a href="{{ url_for('remove_post', post_id=post.id) }}">Delete</a> ·
  <a href="{{ url_for('my_posts') }}">Back</a>
</p>
{% endblock %}
""")

TEMPL_EDITOR = wrap("""
{% block body %}
<link href="https://cdn.jsdelivr.net/npm/quill@2.0.3/dist/quill.snow.css" rel="stylesheet">
<hr>
<form method="post" action="{{ action }}" id="post-form">
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ post.title if post else '' }}">
  <label>Content</label>
  <div id="editor-container"></div>
  <input type="hidden" name="content" value="{{ post.content if post else '' }}">
  <button type="submit" style="margin-top:1rem;">Save</button>
  <a href="{{ url_for('post_detail', post_id=post.id) if post else url_for('my_posts') }}"
     style="margin-left:1rem;">Cancel</a>
</form>
<script src="https://cdn.jsdelivr.net/npm/quill@2.0.3/dist/quill.js"></script>
<script>
document.addEventListener('DOMContentLoaded', () => {
  const quill = new Quill('#editor-container', {
    theme: 'snow',
    modules: {toolbar: [
      [{header: [1, 2, 3, false]}],
      ['bold', 'italic', 'underline', 'strike'],
      ['blockquote', 'code-block'],
      [{list: 'ordered'}, {list: 'bullet'}],
      ['link', 'image'],
      ['clean'],
    ]},
  });
  const hidden = document.querySelector('input[name="content"]');
  if (hidden.value) quill.clipboard.dangerouslyPasteHTML(hidden.value);
  document.getElementById('post-form').addEventListener('submit', () => {
    hidden.value = quill.getLength() > 1 ? quill.root.innerHTML : '';
  });
});
</script>
{% endblock %}
""")

TEMPL_DELETE = wrap("""
{% block body %}
<hr>
<h2>Delete post?</h2>
<article style="border-left:3px solid #c00; padding-left:1rem;">
  <h3>{{ post.title }}</h3>
  <div class="e-content">{{ post.content|clean }}</div>
  <small class="meta">{{ post.created_at|ts }}</small>
</article>
<form method="post" style="margin-top:1rem;">
  <button style="background:#c00; color:#fff; border-color:#c00;">Yes – delete it</button>
  <a href="{{ url_for('post_detail', post_id=post.id) }}" style="margin-left:1rem;">Cancel</a>
</form>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">Page not found</h2>
<p>The page you asked for doesn’t exist.
   <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">Internal Server Error</h2>
<p>Something went wrong on our side. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
