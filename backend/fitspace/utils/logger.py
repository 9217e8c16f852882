import structlog, logging, os

ENV_MODE = os.getenv("ENV_MODE", "LOCAL")
SERVICE_NAME = os.getenv("SERVICE_NAME", "fitspace-billing")

LOGGING_LEVEL = logging.getLevelNamesMapping().get(
    os.getenv("LOGGING_LEVEL", "DEBUG" if ENV_MODE.upper() == "LOCAL" else "INFO").upper(),
    logging.INFO
)

# dict_tracebacks works with JSONRenderer, format_exc_info works with ConsoleRenderer
if ENV_MODE.lower() in ("local", "staging"):
    exception_processor = structlog.processors.format_exc_info
    renderer = [structlog.dev.ConsoleRenderer(colors=True)]
else:
    exception_processor = structlog.processors.dict_tracebacks
    renderer = [structlog.processors.JSONRenderer()]


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        exception_processor,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        _add_service,
        *renderer,
    ],
    cache_logger_on_first_use=True,
    wrapper_class=structlog.make_filtering_bound_logger(LOGGING_LEVEL),
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger()


def log_context(**fields):
    """Bind fields (event id, subscription id, request id) to every line logged inside the block."""
    return structlog.contextvars.bound_contextvars(**{k: v for k, v in fields.items() if v is not None})
