import os
import platform

from configobj import ConfigObj, ConfigObjError, Section, flatten_errors
from validate import Validator

# The default extension for configuration files
config_extension = '.cfg'

# The name of the bridge configuration
bridge_config_name = 'bridge'

# the directory holding the packaged configuration files
package_directory = os.path.dirname(os.path.abspath(__file__))


def config_flavor(name, flavor=None):
    configname = name if not flavor else name + '.' + flavor
    return configname


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory.
    """
    return os.path.join(directory or package_directory, name + config_extension)


def user_config_filename(name):
    return os.path.expanduser('~/.remote' + name + config_extension)


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name.
    :param name:    The name of the base configuration
    :param subpart: The name of the specialization.
    :return: The ConfigObj for the configuration file, empty if the file does not exist.
    """
    configname = config_flavor(name, subpart)
    file = config_filename(configname, directory)
    return load_config_file_base(file, False)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def describe_errors(config, result):
    """
    Lists the validation failures as readable strings.
    """
    errors = []
    for section_list, key, res in flatten_errors(config, result):
        section = '.'.join(section_list) or '<root>'
        if key is None:
            errors.append("section %s is missing" % section)
        else:
            errors.append("%s.%s: %s" % (section, key, res if res is not False else 'missing'))
    return errors


def load_config(name=bridge_config_name, directory=None, user_file=None, local_file=None):
    """
        Loads all the configuration files that relate to the given name.
        Configurations are merged in this order, later files overriding earlier ones:
        - the default specialization
        - the platform specialization
        - the user override
        - the local file, when given. This file must exist.
        The merged configuration is then validated against the "schema" specialization,
        which also provides defaults for any values not given.
    :param directory: the location of the configuration files
    :param user_file: the user override, defaults to ~/.remote<name>.cfg
    :param local_file: an explicitly requested configuration file
    :return: the validated ConfigObj
    """
    default_config = config_flavor_file(name, directory, 'default')
    platform_config = config_flavor_file(name, directory, os_name())
    user_config = load_config_file_base(user_file or user_config_filename(name), must_exist=False)
    schema = config_filename(config_flavor(name, 'schema'), directory)
    config = ConfigObj(interpolation='Template', configspec=schema)
    config.merge(default_config)
    config.merge(platform_config)
    config.merge(user_config)
    if local_file:
        config.merge(load_config_file_base(local_file))

    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        raise ConfigObjError("the config file %s failed validation: %s" %
                             (name, "; ".join(describe_errors(config, result))))
    return config


def fetch_conf_path(conf: Section, path):
    """
    Retrieves the named configuration section
    :param conf:        The root configuration
    :param path:        An iterable that lists the names of the sections to descend through
    :return: The configuration object identified by the path, or None
    """
    for p in path:
        conf = conf.get(p, None)
        if conf is None:
            return None
    return conf


def apply_conf(conf: Section, target):
    """
    Applies the values in a configuration section to a target object.
    It does this by iterating over the items in the configuration and setting any attributes
    with the same name that the target already has.
    """
    for k, v in conf.items():
        if hasattr(target, k):
            setattr(target, k, v)


class BridgeSettings:
    """
    The settings the bridge runs with. Values come from the configuration files and
    can then be overridden from the command line.
    """

    def __init__(self):
        self.device = None
        self.rate = 19200
        self.tick = 0.001
        self.address = None
        self.port = 443
        self.update_rate = 500
        self.certificate = './certificate.crt'
        self.password = ''
        self.verify_certificate = True
        self.connect_timeout = 5.0
        self.read_timeout = 10.0
        self.reauth_after = 3
        self.reauth_period = 60.0
        self.monitor = False
        self.log_lines = 256

    @classmethod
    def from_config(cls, conf: Section):
        settings = cls()
        for section in ('serial', 'gateway'):
            values = fetch_conf_path(conf, [section])
            if values is not None:
                apply_conf(values, settings)
        monitor = fetch_conf_path(conf, ['monitor'])
        if monitor is not None:
            settings.monitor = monitor.get('enabled', settings.monitor)
            settings.log_lines = monitor.get('log_lines', settings.log_lines)
        return settings

    def override(self, **values):
        """ replaces settings with the given values, ignoring values that are None """
        for k, v in values.items():
            if v is not None:
                if not hasattr(self, k):
                    raise AttributeError("unknown setting %s" % k)
                setattr(self, k, v)
        return self

    @property
    def timeout(self):
        return self.connect_timeout, self.read_timeout

    def missing(self):
        """ names the settings that must be given but are not. The password is needed only with a gateway. """
        required = ('device', 'password') if self.address else ('device',)
        return [name for name in required if not getattr(self, name)]
