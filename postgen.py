"""
Static site generator for a metadata-driven blog. Run ``postgen`` in the
site directory to build everything, or ``postgen new`` to add a post.
"""

import click
import dataclasses
import datetime
import dateutil.tz
import jinja2
import json
import os
from os import path
import re
import subprocess
import sys
from typing import Optional


#### Settings


@dataclasses.dataclass(frozen=True)
class Settings:
    """
    Fixed paths and values for one site. Paths are relative to ``site_dir``,
    which is also the working directory of the external tools.
    """
    site_dir: str = '.'

    metadata_file: str = 'posts.json'
    contacts_file: str = 'contacts.json'
    content_dir: str = 'content'
    source_extension: str = '.md'
    output_dir: str = 'posts'
    index_file: str = 'index.html'

    templates_dir: str = 'templates'
    index_template: str = 'index.html'
    redirect_template: str = 'redirect.html'

    author: str = 'hirrolot'
    site_title: str = 'hirrolot'
    header_fragment: str = 'header.html'
    post_header_fragment: str = 'post_header_aux.html'
    comments_fragment: str = 'utterances.html'
    stylesheet: str = 'style.css'
    post_stylesheet: str = '../style.css'
    favicon: str = 'myself.png'
    script: str = 'script.js'

    converter_command: tuple = ('pandoc',)
    post_processor_command: tuple = ('node', 'transform.js')

    stub_text: str = 'Write the post here.\n'
    # Timezone name for stamping new posts; None means the local zone.
    timezone: Optional[str] = None

    def site_path(self, *parts):
        return path.join(self.site_dir, *parts)

    def source_path(self, name):
        return path.join(self.content_dir, name + self.source_extension)

    def output_path(self, name):
        return path.join(self.output_dir, name + '.html')


config_file_name = 'config.json'


def load_settings(site_dir):
    """
    Build settings for the site in ``site_dir``, applying overrides from an
    optional ``config.json`` there. Keys are the field names of Settings.
    """
    defaults = Settings(site_dir=site_dir)
    config_path = path.join(site_dir, config_file_name)
    if not path.exists(config_path):
        return defaults

    overrides = read_json(config_path)
    if not isinstance(overrides, dict):
        raise StoreError(f"{config_file_name} must contain a JSON object")

    known_keys = {f.name for f in dataclasses.fields(Settings)} - {'site_dir'}
    if extra_keys := overrides.keys() - known_keys:
        log(f"WARN: Unrecognized configuration keys in {config_file_name}: {sorted(extra_keys)!r}")

    changes = {}
    for key in overrides.keys() & known_keys:
        value = overrides[key]
        default = getattr(defaults, key)
        if isinstance(default, tuple):
            if not value or not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise StoreError(f"{config_file_name}: {key} must be a non-empty list of strings")
            value = tuple(value)
        elif key == 'timezone':
            if value is not None and not isinstance(value, str):
                raise StoreError(f"{config_file_name}: {key} must be a string or null")
        elif not isinstance(value, str):
            raise StoreError(f"{config_file_name}: {key} must be a string")
        changes[key] = value

    settings = dataclasses.replace(defaults, **changes)
    post_timezone(settings)  # fail early on a bad zone name
    return settings


def post_timezone(settings):
    if settings.timezone is None:
        return dateutil.tz.tzlocal()
    tz = dateutil.tz.gettz(settings.timezone)
    if tz is None:
        raise StoreError(f"Unknown timezone in {config_file_name}: {settings.timezone!r}")
    return tz


def today(settings):
    return datetime.datetime.now(post_timezone(settings)).date()


#### Errors


class BuildError(click.ClickException):
    """A condition that aborts the whole run. Nothing is retried."""


class StoreError(BuildError):
    """Missing, unreadable, or malformed metadata, contacts, or config file."""


class InvalidPost(BuildError):
    """A post record that can't be used, identified by its name."""

    def __init__(self, name, problem):
        super().__init__(f"Post {name!r}: {problem}")
        self.name = name


class ExternalToolError(BuildError):
    """The converter or post-processor could not run or exited non-zero."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode


class InputError(BuildError):
    """Unusable answer in the new-post prompts."""


#### CLI

# Commands later hook into this as @cli.command(). With no command, build.
@click.group(invoke_without_command=True)
@click.option('--site-dir', default='.', show_default=True,
              type=click.Path(exists=True, file_okay=False),
              help="Directory holding the site sources.")
@click.pass_context
def cli(ctx, site_dir):
    """Build the site, or add a post with the ``new`` command."""
    ctx.obj = load_settings(site_dir)
    if ctx.invoked_subcommand is None:
        build_site(ctx.obj, SubprocessRunner(site_dir))


##### Utilities


def log(msg):
    """Log messages to STDERR."""
    print(str(msg), file=sys.stderr)


def read_json(file_path):
    """Parse a JSON file, raising StoreError if it can't be read or parsed."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except OSError as e:
        raise StoreError(f"Could not read {file_path}: {e.strerror}") from e
    except ValueError as e:
        raise StoreError(f"Could not parse {file_path}: {e}") from e


def read_text(file_path):
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return f.read()
    except OSError as e:
        raise BuildError(f"Could not read {file_path}: {e.strerror}") from e


def write_file(file_path, content):
    """Write text to a file, replacing whatever was there."""
    existed = path.exists(file_path)
    try:
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(content)
    except OSError as e:
        raise BuildError(f"Could not write {file_path}: {e.strerror}") from e
    if existed:
        print(f"Updating {file_path}")
    else:
        print(f"Creating {file_path}")


def make_dirs(dir_path):
    try:
        os.makedirs(dir_path, exist_ok=True)
    except OSError as e:
        raise BuildError(f"Could not create directory {dir_path}: {e.strerror}") from e


#### Dates


month_names = ('Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
               'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec')
re_post_date = re.compile(r'(?P<month>[A-Za-z]+) (?P<day>[1-9][0-9]?), (?P<year>[0-9]{4})')


def parse_date(date_str):
    """
    Parse a display date like ``Jan 2, 2006`` into a ``datetime.date``.

    The format is strict: English three-letter month, day without a leading
    zero, comma, four-digit year. Raises ValueError on anything else,
    including dates that don't exist on the calendar.
    """
    m = re_post_date.fullmatch(date_str)
    if m is None:
        raise ValueError(f"Date {date_str!r} is not in the form 'Jan 2, 2006'")
    if m.group('month') not in month_names:
        raise ValueError(f"Unknown month {m.group('month')!r} in date {date_str!r}")
    month = month_names.index(m.group('month')) + 1
    try:
        return datetime.date(int(m.group('year')), month, int(m.group('day')))
    except ValueError as e:
        raise ValueError(f"Date {date_str!r} is not a calendar date: {e}") from e


def format_date(date):
    """Inverse of parse_date."""
    return f"{month_names[date.month - 1]} {date.day}, {date.year:04d}"


#### Posts


@dataclasses.dataclass(frozen=True)
class RegularPost:
    """A post whose page is converted from its source document."""
    name: str
    title: str
    date: str


@dataclasses.dataclass(frozen=True)
class RedirectPost:
    """A post whose page only sends the reader on to another URL."""
    name: str
    title: str
    date: str
    redirect_to: str


def post_date(post):
    """Parsed date of a post, for ordering. Errors name the post."""
    try:
        return parse_date(post.date)
    except ValueError as e:
        raise InvalidPost(post.name, str(e)) from e


def post_to_record(post):
    """Metadata store representation of a post."""
    return {
        'name': post.name,
        'title': post.title,
        'date': post.date,
        'redirectTo': post.redirect_to if isinstance(post, RedirectPost) else '',
    }


#### Loading


meta_keys_required = {'name', 'title', 'date'}
meta_keys_optional = {'redirectTo'}
# Names become file stems in the content and output directories.
re_post_name = re.compile(r'[^/\\.][^/\\]*')


def check_post_name(name):
    if not re_post_name.fullmatch(name):
        raise InvalidPost(name, "name must not contain a path separator or start with '.'")


def post_from_record(record, position):
    """
    Validate one metadata store record and turn it into a post. ``position``
    (1-based) identifies records that don't have a usable name.
    """
    if not isinstance(record, dict):
        raise StoreError(f"Record #{position} in the metadata store is not an object")

    name = record.get('name')
    label = name if isinstance(name, str) and name else f"#{position}"

    # A null optional key counts as absent.
    for key in sorted(meta_keys_required | meta_keys_optional):
        if key in meta_keys_optional and record.get(key) is None:
            continue
        if key in record and not isinstance(record[key], str):
            raise InvalidPost(label, f"{key} must be a string")

    missing_keys = sorted(k for k in meta_keys_required if not record.get(k))
    if missing_keys:
        raise InvalidPost(label, f"missing required keys: {', '.join(missing_keys)}")

    unknown_keys = record.keys() - meta_keys_required - meta_keys_optional
    if unknown_keys:
        log(f"WARN: Unexpected keys in post {name!r}: {sorted(unknown_keys)}")

    check_post_name(name)
    try:
        parse_date(record['date'])
    except ValueError as e:
        raise InvalidPost(name, str(e)) from e

    redirect_to = record.get('redirectTo') or ''
    if redirect_to:
        return RedirectPost(name, record['title'], record['date'], redirect_to)
    else:
        return RegularPost(name, record['title'], record['date'])


def load_records(settings):
    """Raw records from the metadata store, in store order."""
    records = read_json(settings.site_path(settings.metadata_file))
    if not isinstance(records, list):
        raise StoreError(f"{settings.metadata_file} must contain a JSON array of posts")
    return records


def parse_records(records):
    """
    Turn store records into posts, in store order. Every record is checked
    before anything is returned, so one bad record fails the whole load.
    """
    posts = [post_from_record(r, i) for i, r in enumerate(records, start=1)]

    names = [p.name for p in posts]
    duplicates = names[:]
    for n in set(names):
        duplicates.remove(n)
    if duplicates:
        raise InvalidPost(duplicates[0], "name is used by more than one post")

    return posts


def load_posts(settings):
    return parse_records(load_records(settings))


def save_records(settings, records):
    """Rewrite the whole metadata store, pretty-printed."""
    content = json.dumps(records, indent=4, ensure_ascii=False)
    write_file(settings.site_path(settings.metadata_file), content + '\n')


def load_contacts(settings):
    """
    Contacts for the index page: a list of objects with string ``link``,
    ``image`` and ``description``.
    """
    contacts = read_json(settings.site_path(settings.contacts_file))
    if not isinstance(contacts, list):
        raise StoreError(f"{settings.contacts_file} must contain a JSON array of contacts")
    for position, contact in enumerate(contacts, start=1):
        if not isinstance(contact, dict) or not all(
                isinstance(contact.get(k), str) for k in ('link', 'image', 'description')):
            raise StoreError(
                f"Contact #{position} in {settings.contacts_file} needs string "
                "link, image and description"
            )
    return contacts


#### External tools


class ProcessRunner:
    """Runs an external command and returns ``(combined_output, returncode)``."""

    def run(self, args):
        raise NotImplementedError


class SubprocessRunner(ProcessRunner):
    """Runs commands for real, from the site directory."""

    def __init__(self, cwd):
        self.cwd = cwd

    def run(self, args):
        try:
            proc = subprocess.run(
                list(args), cwd=self.cwd,
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, errors='replace',
            )
        except OSError as e:
            raise ExternalToolError(f"Could not run {args[0]}: {e.strerror}") from e
        return (proc.stdout, proc.returncode)


def run_tool(runner, args, failure):
    """
    Run a command, echoing its output whether or not it succeeds, and raise
    ExternalToolError (prefixed with ``failure``) on a non-zero exit.
    """
    output, returncode = runner.run(args)
    if output:
        print(output, end='')
    if returncode != 0:
        raise ExternalToolError(
            f"{failure}: {args[0]} exited with status {returncode}", returncode
        )


def converter_args(settings, post):
    """Command line that turns one post's source document into its page."""
    return [
        *settings.converter_command,
        settings.source_path(post.name),
        '--output', settings.output_path(post.name),
        '--standalone',
        '--metadata', f'author={settings.author}',
        '--metadata', f'title={post.title}',
        '--metadata', f'date={post.date}',
        '--include-in-header', settings.header_fragment,
        '--include-in-header', settings.post_header_fragment,
        '--include-after-body', settings.comments_fragment,
        '--table-of-contents',
        '--citeproc',
        '--css', settings.post_stylesheet,
    ]


def convert_post(settings, post, runner):
    source = settings.source_path(post.name)
    if not path.isfile(settings.site_path(source)):
        raise InvalidPost(post.name, f"source document {source} does not exist")
    run_tool(runner, converter_args(settings, post), f"Converting post {post.name!r} failed")


def post_process(settings, page_paths, runner):
    """Hand every generated regular page to the DOM transformer in one call."""
    if not page_paths:
        log("INFO: No regular pages were generated, skipping post-processing")
        return
    run_tool(runner, [*settings.post_processor_command, *page_paths], "Post-processing failed")


#### Templates


default_templates = {
    'index.html': """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ site_title }}</title>
{{ header|safe }}
<link rel="stylesheet" href="{{ stylesheet }}" />
<link rel="shortcut icon" href="{{ favicon }}" type="image/x-icon">
<script src="{{ script }}"></script>
</head>
<body>
<h1 class="blog-title">{{ site_title }}</h1>

<div class="contacts">
{% for contact in contacts %}
<a href="{{ contact.link }}"><img src="{{ contact.image }}" alt="{{ contact.description }}" title="{{ contact.description }}"></a>
{% endfor %}
</div>

<div class="posts-history">
{% for post in posts %}
<div class="post-link"><a href="{{ post.href }}">{{ post.title }}</a><br><span class="post-date">{{ post.date }}</span></div>
{% endfor %}
</div>
</body>
</html>
""",
    'redirect.html': """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta http-equiv="refresh" content="0; url={{ url }}">
<script>window.location.replace({{ url|tojson }});</script>
</head>
<body>
<p>Moved to <a href="{{ url }}">{{ url }}</a>.</p>
</body>
</html>
""",
}


def template_env(settings):
    """
    Jinja environment where templates in the site's templates directory
    take precedence over the built-in defaults of the same name.
    """
    return jinja2.Environment(
        loader=jinja2.ChoiceLoader([
            jinja2.FileSystemLoader(settings.site_path(settings.templates_dir)),
            jinja2.DictLoader(default_templates),
        ]),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_template(env, template_name, **context):
    try:
        return env.get_template(template_name).render(**context)
    except jinja2.TemplateError as e:
        raise BuildError(f"Could not render template {template_name}: {e}") from e


#### Command: (default) build


def write_redirect_page(settings, env, post):
    write_file(
        settings.site_path(settings.output_path(post.name)),
        render_template(env, settings.redirect_template, url=post.redirect_to),
    )


def generate_pages(settings, posts, runner):
    """
    Write one page per post, in store order, and return the output paths
    (relative to the site) of the regular pages. Redirect pages are not
    returned since they don't get post-processed.

    The first failure stops generation. Pages written before it stay on
    disk; there is no rollback.
    """
    make_dirs(settings.site_path(settings.output_dir))
    env = template_env(settings)
    page_paths = []
    for post in posts:
        if isinstance(post, RedirectPost):
            write_redirect_page(settings, env, post)
        elif isinstance(post, RegularPost):
            convert_post(settings, post, runner)
            page_paths.append(settings.output_path(post.name))
        else:
            raise TypeError(f"Not a post: {post!r}")
    return page_paths


def sort_posts_desc(posts):
    """
    Posts in descending date order. Posts sharing a date keep their store
    order (sorted() stays stable with reverse=True).
    """
    return sorted(posts, key=post_date, reverse=True)


def index_entry(settings, post):
    return {
        'href': f"{settings.output_dir}/{post.name}.html",
        'title': post.title,
        'date': post.date,
    }


def build_index(settings, posts):
    """Render the index page listing every post, newest first."""
    posts_desc = sort_posts_desc(posts)
    contacts = load_contacts(settings)
    header = read_text(settings.site_path(settings.header_fragment))

    html_out = render_template(
        template_env(settings), settings.index_template,
        site_title=settings.site_title,
        header=header,
        stylesheet=settings.stylesheet,
        favicon=settings.favicon,
        script=settings.script,
        posts=[index_entry(settings, p) for p in posts_desc],
        contacts=contacts,
    )
    write_file(settings.site_path(settings.index_file), html_out)


def build_site(settings, runner):
    """
    Full build: load the store, generate every page, post-process the
    regular pages, then write the index.
    """
    posts = load_posts(settings)
    page_paths = generate_pages(settings, posts, runner)
    post_process(settings, page_paths, runner)
    build_index(settings, posts)
    log(f"INFO: Processed {len(posts)} posts")


#### Command: new


def check_new_name(posts, name):
    if not name:
        raise InputError("Name must not be empty")
    check_post_name(name)
    if any(p.name == name for p in posts):
        raise InvalidPost(name, "a post with this name already exists")


def add_post(settings, records, post):
    """
    Put a new post at the front of the metadata store and, for a regular
    post, create its source document stub. Everything is checked before
    the store is touched.
    """
    if not post.title:
        raise InputError("Title must not be empty")
    check_new_name(parse_records(records), post.name)
    source = settings.source_path(post.name)
    if isinstance(post, RegularPost) and path.exists(settings.site_path(source)):
        raise InvalidPost(post.name, f"source document {source} already exists")

    save_records(settings, [post_to_record(post)] + records)

    if isinstance(post, RegularPost):
        make_dirs(settings.site_path(settings.content_dir))
        write_file(settings.site_path(source), settings.stub_text)


def prompt_line(text):
    # Empty input comes back as '' rather than re-prompting; end of input aborts.
    return click.prompt(text, default='', show_default=False).strip()


@cli.command(name='new')
@click.pass_obj
def cmd_new(settings):
    """
    Create a new post, prompting for its title, name and redirect target.

    The post is dated today and goes first in the metadata store.
    """
    records = load_records(settings)
    posts = parse_records(records)

    title = prompt_line("Title")
    if not title:
        raise InputError("Title must not be empty")
    name = prompt_line("Name")
    check_new_name(posts, name)

    answer = prompt_line("Is this a redirect? (y/n)")
    date = format_date(today(settings))
    if answer == 'y':
        redirect_to = prompt_line("Redirect to")
        if not redirect_to:
            raise InputError("Redirect target must not be empty")
        post = RedirectPost(name, title, date, redirect_to)
    elif answer == 'n':
        post = RegularPost(name, title, date)
    else:
        raise InputError(f"Expected 'y' or 'n', got {answer!r}")

    add_post(settings, records, post)
    if isinstance(post, RegularPost):
        print(settings.source_path(post.name))  # to stdout


#### Main


if __name__ == '__main__':
    cli()
