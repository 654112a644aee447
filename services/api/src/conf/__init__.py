from pydantic import BaseModel

from utils import auth, env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class SweepConf(BaseModel):
    enabled: bool
    interval_seconds: int
    push_dispatch_interval_seconds: int

#### Env Vars ####

## Auth ##

USE_AUTH = EnvVarSpec(
    id="USE_AUTH",
    default="true",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

AUTH_OIDC_JWK_URL = EnvVarSpec(id="AUTH_OIDC_JWK_URL", is_optional=True)
AUTH_OIDC_AUDIENCE = EnvVarSpec(id="AUTH_OIDC_AUDIENCE", is_optional=True)
AUTH_OIDC_ISSUER = EnvVarSpec(id="AUTH_OIDC_ISSUER", is_optional=True)

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Sweeps ##

SWEEPS_ENABLED = EnvVarSpec(
    id="SWEEPS_ENABLED",
    default="true",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_INTERVAL_SECONDS",
    default="60",
    parse=int,
    type=(int, ...),
)

PUSH_DISPATCH_INTERVAL_SECONDS = EnvVarSpec(
    id="PUSH_DISPATCH_INTERVAL_SECONDS",
    default="15",
    parse=int,
    type=(int, ...),
)

## Internal endpoints ##

INTERNAL_API_KEY = EnvVarSpec(id="INTERNAL_API_KEY", is_optional=True, is_secret=True)

## Push / payments ##
## NOTE: PUSH_BACKEND, EXPO_ACCESS_TOKEN, PAYMENT_PROCESSOR and STRIPE_SECRET_KEY
## are read by clients.push and clients.payments; they are declared here so
## startup validation reports them alongside the rest.

PUSH_BACKEND = EnvVarSpec(id="PUSH_BACKEND", default="log")
EXPO_ACCESS_TOKEN = EnvVarSpec(id="EXPO_ACCESS_TOKEN", is_optional=True, is_secret=True)
PAYMENT_PROCESSOR = EnvVarSpec(id="PAYMENT_PROCESSOR", default="mock")
STRIPE_SECRET_KEY = EnvVarSpec(id="STRIPE_SECRET_KEY", is_optional=True, is_secret=True)

#### Validation ####
VALIDATED_ENV_VARS = [
    USE_AUTH,
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    SWEEPS_ENABLED,
    SWEEP_INTERVAL_SECONDS,
    PUSH_DISPATCH_INTERVAL_SECONDS,
    PUSH_BACKEND,
    EXPO_ACCESS_TOKEN,
    PAYMENT_PROCESSOR,
    STRIPE_SECRET_KEY,
]

AUTH_ENV_VARS = [
    AUTH_OIDC_JWK_URL,
    AUTH_OIDC_AUDIENCE,
    AUTH_OIDC_ISSUER,
]

def validate() -> bool:
    if not env.validate(VALIDATED_ENV_VARS):
        return False
    # Only validate auth vars if auth is enabled
    if get_use_auth():
        if not env.parse(AUTH_OIDC_JWK_URL):
            logger.error("USE_AUTH is enabled but AUTH_OIDC_JWK_URL is not set")
            return False
        return env.validate(AUTH_ENV_VARS)
    return True

#### Getters ####

def get_use_auth() -> bool:
    return env.parse(USE_AUTH)

def get_auth_config() -> auth.AuthClientConfig:
    """Get authentication configuration."""
    return auth.AuthClientConfig(
        jwk_url=env.parse(AUTH_OIDC_JWK_URL),
        audience=env.parse(AUTH_OIDC_AUDIENCE),
        issuer=env.parse(AUTH_OIDC_ISSUER),
    )

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_sweep_conf() -> SweepConf:
    return SweepConf(
        enabled=env.parse(SWEEPS_ENABLED),
        interval_seconds=max(1, env.parse(SWEEP_INTERVAL_SECONDS)),
        push_dispatch_interval_seconds=max(1, env.parse(PUSH_DISPATCH_INTERVAL_SECONDS)),
    )

def get_internal_api_key() -> str | None:
    return env.parse(INTERNAL_API_KEY)
