import os
import uuid

from .errors import ValidationFailed
from .util import MiB, memoized_property, os_errors, parse_size


CONFIG_PATH = '/etc/keypool.conf'
CONFIG_ENV = 'KEYPOOL_CONF'

DEFAULTS = {
    'KEYPOOL_KEYSTORE': '/var/db/keypool/keystore.img',
    'KEYPOOL_KEYFILE': '',
    # Made-up GUIDs, so that nothing mistakes our partitions for
    # something it should mount or format
    'KEYPOOL_KEYSTORE_TYPE': '6b6579f0-0000-4b70-8000-6b657973746f',
    'KEYPOOL_KEYSTORE_SIZE': '16',
    'KEYPOOL_MOUNT_TEMPLATE': '/tmp/keypool.XXXXXX',
    'KEYPOOL_DATA_TYPE': '6b6579f0-0001-4b70-8000-64617461706f',
    'KEYPOOL_DATA_SIZE': '',
}


def _unquote(val):
    if len(val) >= 2 and val[0] == val[-1] and val[0] in '"\'':
        return val[1:-1]
    return val


def parse_shellvars(text):
    """Parse shell variable assignments with the augeas Shellvars lens."""

    import augeas
    aug = augeas.Augeas(
        root='/dev/null', flags=augeas.Augeas.NO_MODL_AUTOLOAD)
    aug.set('/raw/conf', text)
    aug.text_store('Shellvars.lns', '/raw/conf', '/conf')
    values = {}
    for path in aug.match('/conf/*'):
        # Repeated assignments match as NAME[1], NAME[2]; the last one wins
        name = path.rsplit('/', 1)[1].split('[', 1)[0]
        # Skip #comment nodes and export/unset statements
        if not name.startswith('KEYPOOL_'):
            continue
        values[name] = _unquote(aug.get(path) or '')
    return values


def _size(name, raw):
    try:
        size = parse_size(raw)
    except ValueError as err:
        raise ValidationFailed('{}={!r}: {}'.format(name, raw, err)) from err
    if size <= 0 or size % MiB:
        raise ValidationFailed(
            '{}={!r}: must be a positive multiple of 1MiB'.format(name, raw))
    return size


def _guid(name, raw):
    try:
        return uuid.UUID(raw)
    except ValueError as err:
        raise ValidationFailed(
            '{}={!r} is not a GUID'.format(name, raw)) from err


class Config:
    """Settings, validated when first used."""

    def __init__(self, values):
        self.values = dict(DEFAULTS)
        self.values.update(values)

    @classmethod
    def load(cls, environ=os.environ):
        path = environ.get(CONFIG_ENV, CONFIG_PATH)
        values = {}
        if os.path.exists(path):
            with os_errors('Can\'t read {}'.format(path)), open(path) as fi:
                values.update(parse_shellvars(fi.read()))
        values.update(
            (key, val) for key, val in environ.items() if key in DEFAULTS)
        return cls(values)

    def _raw(self, name):
        return self.values[name].strip()

    @memoized_property
    def keystore(self):
        path = self._raw('KEYPOOL_KEYSTORE')
        if not os.path.isabs(path):
            raise ValidationFailed(
                'KEYPOOL_KEYSTORE={!r} is not an absolute path'.format(path))
        return path

    @memoized_property
    def keyfile(self):
        path = self._raw('KEYPOOL_KEYFILE')
        if not path:
            return None
        if not os.path.isfile(path):
            raise ValidationFailed(
                'KEYPOOL_KEYFILE={!r} is not a file'.format(path))
        return path

    @memoized_property
    def keystore_type(self):
        return _guid('KEYPOOL_KEYSTORE_TYPE', self._raw('KEYPOOL_KEYSTORE_TYPE'))

    @memoized_property
    def data_type(self):
        rv = _guid('KEYPOOL_DATA_TYPE', self._raw('KEYPOOL_DATA_TYPE'))
        if rv == self.keystore_type:
            raise ValidationFailed(
                'KEYPOOL_DATA_TYPE and KEYPOOL_KEYSTORE_TYPE must differ')
        return rv

    @memoized_property
    def keystore_size(self):
        return _size('KEYPOOL_KEYSTORE_SIZE', self._raw('KEYPOOL_KEYSTORE_SIZE'))

    @memoized_property
    def data_size(self):
        raw = self._raw('KEYPOOL_DATA_SIZE')
        if not raw:
            return None
        return _size('KEYPOOL_DATA_SIZE', raw)

    @memoized_property
    def mount_template(self):
        """(directory, prefix) for mkdtemp, from a mktemp-style template."""
        template = self._raw('KEYPOOL_MOUNT_TEMPLATE')
        if not os.path.isabs(template):
            raise ValidationFailed(
                'KEYPOOL_MOUNT_TEMPLATE={!r} is not an absolute path'
                .format(template))
        directory, base = os.path.split(template)
        return directory, base.rstrip('X')
