import importlib
import logging
import pkgutil
import typing

logger = logging.getLogger(__name__)

PROJECT_BASE = "acmekit"


class PluginRegistry:
    """Central place to register and look up plugins, i.e. challenge solvers.

    Plugins are stored in the registry of the base class they derive from,
    so that config files can refer to them by name.
    """

    _registry_map = dict()

    def __init__(self):
        self._subclasses = dict()

    @classmethod
    def load_plugins(cls, path: str) -> typing.List[str]:
        """Imports all modules of the given subpackage so that their plugins get registered.

        Modules that fail to import, e.g. because of a missing optional dependency, are skipped.

        :param path: The subpackage to load plugins from, relative to the project package.
        :return: The names of the modules that were loaded.
        """
        package_name = f"{PROJECT_BASE}.{path}"
        try:
            package = importlib.import_module(package_name)
        except ModuleNotFoundError:
            logger.warning("Could not find the plugins package %s", package_name)
            return []

        loaded = []
        for module in pkgutil.iter_modules(package.__path__):
            module_name = f"{package_name}.{module.name}"
            logger.debug("Loading %s", module_name)
            try:
                importlib.import_module(module_name)
            except ImportError as e:
                logger.info("Could not load %s: %s", module_name, e)
            else:
                loaded.append(module_name)

        return loaded

    @classmethod
    def get_registry(cls, plugin_parent_cls: type) -> "PluginRegistry":
        """Gets the plugin registry for the given parent class.

        :param plugin_parent_cls: The parent class.
        :return: The plugin registry for the given parent class.
        """
        return cls._registry_map.setdefault(plugin_parent_cls, PluginRegistry())

    @classmethod
    def register_plugin(cls, config_name: str):
        """Decorator that registers a class as a plugin under the given name.
        The name is used to refer to the class in config files.

        :param config_name: The plugin's name in config files
        :return: The registered plugin class.
        """

        def deco(plugin_cls):
            for registered_parent, registry_ in cls._registry_map.items():
                if issubclass(plugin_cls, registered_parent):
                    registry = registry_
                    break
            else:
                registry = cls.get_registry(plugin_cls.__mro__[1])

            registry._subclasses[config_name] = plugin_cls

            return plugin_cls

        return deco

    def config_mapping(self) -> typing.Dict[str, type]:
        """Maps plugin config names to the plugin classes.

        :return: Mapping from config names to the actual class objects.
        """
        return self._subclasses

    def get_plugin(self, config_name: str) -> type:
        """Queries the registry for a plugin by config name.

        :param config_name: The plugin's config name
        :raises: :class:`ValueError` If no plugin is registered by the given name
        :return: The found plugin class
        """
        if config_name not in (plugin_names := self._subclasses.keys()):
            raise ValueError(
                f"The plugin {config_name} has not been registered. Valid options: "
                f"{', '.join(plugin_names)}."
            )

        return self._subclasses[config_name]
