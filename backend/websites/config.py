"""
Site configuration struct.

Defaults are resolved once, when a site is created (or when a migration derives
the configuration for the other backend), and stored on the record as JSON.
"""
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, Optional

ENVIRONMENT_LOCAL = 'local'
ENVIRONMENT_CONTAINER = 'container'

PHP_VERSIONS = ['7.4', '8.0', '8.1', '8.2', '8.3']
DEFAULT_PHP_VERSION = '8.1'

ENGINE_SQLITE = 'sqlite'
ENGINE_MYSQL = 'mysql'
ENGINE_MARIADB = 'mariadb'
DATABASE_ENGINES = [ENGINE_SQLITE, ENGINE_MYSQL, ENGINE_MARIADB]

# Default database version per engine; switching the engine switches the version
DATABASE_VERSION_DEFAULTS = {
    ENGINE_SQLITE: '3',
    ENGINE_MYSQL: '8.0',
    ENGINE_MARIADB: '10.11',
}

# Engine used when the caller does not pick one
DEFAULT_ENGINE_FOR_ENVIRONMENT = {
    ENVIRONMENT_LOCAL: ENGINE_SQLITE,
    ENVIRONMENT_CONTAINER: ENGINE_MYSQL,
}

WEB_SERVER_NGINX = 'nginx'
WEB_SERVER_APACHE = 'apache'
WEB_SERVERS = [WEB_SERVER_NGINX, WEB_SERVER_APACHE]

NGINX_IMAGE = 'nginx:1.25-alpine'


@dataclass(frozen=True)
class SiteConfig:
    php_version: str = DEFAULT_PHP_VERSION
    wordpress_version: str = 'latest'
    database_engine: str = ENGINE_SQLITE
    database_version: str = DATABASE_VERSION_DEFAULTS[ENGINE_SQLITE]
    web_server: str = WEB_SERVER_NGINX
    ssl: bool = False
    multisite: bool = False
    images: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def resolve(cls, data: Optional[dict], environment: str) -> 'SiteConfig':
        """Build a config from user input, filling in every default."""
        data = dict(data or {})
        engine = data.get('database_engine') or DEFAULT_ENGINE_FOR_ENVIRONMENT[environment]
        version = data.get('database_version') or DATABASE_VERSION_DEFAULTS[engine]
        config = cls(
            php_version=data.get('php_version') or DEFAULT_PHP_VERSION,
            wordpress_version=data.get('wordpress_version') or 'latest',
            database_engine=engine,
            database_version=version,
            web_server=data.get('web_server') or WEB_SERVER_NGINX,
            ssl=bool(data.get('ssl', False)),
            multisite=bool(data.get('multisite', False)),
        )
        return config.derive_for(environment)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'SiteConfig':
        data = dict(data or {})
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)

    def derive_for(self, environment: str) -> 'SiteConfig':
        """Return this config with the backend-specific parts set for ``environment``.

        Site-level choices (PHP version, database engine, web server) carry over;
        container image tags are derived for the container backend and dropped
        for the local one.
        """
        if environment == ENVIRONMENT_CONTAINER:
            return replace(self, images=container_images(self))
        return replace(self, images={})


def container_images(config: SiteConfig) -> Dict[str, str]:
    """Image tags for the container stack of ``config``."""
    images = {}
    if config.web_server == WEB_SERVER_APACHE:
        # The apache flavour of the WordPress image serves PHP itself
        images['web'] = f'wordpress:php{config.php_version}-apache'
    else:
        images['web'] = NGINX_IMAGE
        images['php'] = f'wordpress:php{config.php_version}-fpm'
    if config.database_engine != ENGINE_SQLITE:
        images['db'] = f'{config.database_engine}:{config.database_version}'
    return images
