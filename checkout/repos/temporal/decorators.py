"""
Decorators that expose repository protocols through Temporal.

``temporal_activity_registration`` turns every public async protocol method
of a concrete repository subclass into a named activity.
``temporal_workflow_proxy`` builds the workflow-side twin: a class whose
protocol methods call those activities by name. Both walk the same
protocol methods, so activity names on either side always line up.
"""

import functools
import inspect
import logging
from datetime import timedelta
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
)

from pydantic import BaseModel
from temporalio import activity, workflow
from temporalio.common import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_protocol(cls: type) -> bool:
    return bool(getattr(cls, "_is_protocol", False))


def protocol_methods(cls: type) -> Dict[str, Callable[..., Any]]:
    """Public async methods declared on the Protocols ``cls`` implements.

    Methods are taken from the Protocol definitions, not from the concrete
    class, so helpers a backend adds never become activities.
    """
    methods: Dict[str, Callable[..., Any]] = {}
    for base in cls.__mro__:
        if base is object or not _is_protocol(base):
            continue
        for name, member in base.__dict__.items():
            if name.startswith("_") or name in methods:
                continue
            if inspect.iscoroutinefunction(member):
                methods[name] = member
    if not methods:
        raise TypeError(
            f"{cls.__name__} does not implement a Protocol with async methods"
        )
    return methods


def _is_model(tp: Any) -> bool:
    return inspect.isclass(tp) and issubclass(tp, BaseModel)


def result_converter(annotation: Any) -> Callable[[Any], Any]:
    """Build a function that rehydrates an activity result.

    Activity results cross the workflow boundary as plain data. Models,
    ``Optional[Model]`` and ``List[Model]`` are validated back into models;
    anything else is returned unchanged.
    """
    if _is_model(annotation):
        return lambda raw: annotation.model_validate(raw)

    origin = get_origin(annotation)
    args = get_args(annotation)

    if origin is Union and type(None) in args:
        inner = [a for a in args if a is not type(None)]
        if len(inner) == 1:
            convert = result_converter(inner[0])
            return lambda raw: None if raw is None else convert(raw)

    if origin in (list, List) and args and _is_model(args[0]):
        model = args[0]
        return lambda raw: [model.model_validate(item) for item in raw]

    return lambda raw: raw


def temporal_activity_registration(
    activity_prefix: str,
) -> Callable[[Type[T]], Type[T]]:
    """
    Class decorator that registers protocol methods as Temporal activities.

    Activity names are ``{activity_prefix}.{method_name}``.

    Example:
        @temporal_activity_registration("checkout.order_repo.postgresql")
        class TemporalPostgreSQLOrderRepository(PostgreSQLOrderRepository):
            pass
    """

    def decorator(cls: Type[T]) -> Type[T]:
        registered = []
        for name, declared in protocol_methods(cls).items():
            implementation = getattr(cls, name)

            def make_activity(impl: Callable[..., Any]) -> Callable[..., Any]:
                @functools.wraps(impl)
                async def run_activity(*args: Any, **kwargs: Any) -> Any:
                    return await impl(*args, **kwargs)

                return run_activity

            wrapper = make_activity(implementation)
            wrapper.__annotations__ = dict(declared.__annotations__)
            setattr(
                cls,
                name,
                activity.defn(name=f"{activity_prefix}.{name}")(wrapper),
            )
            registered.append(name)

        logger.debug(
            "Registered repository methods as activities",
            extra={
                "repository_class": cls.__name__,
                "activity_prefix": activity_prefix,
                "activity_methods": registered,
            },
        )
        return cls

    return decorator


def temporal_workflow_proxy(
    activity_base: str,
    default_timeout_seconds: int = 30,
    retry_methods: Optional[List[str]] = None,
) -> Callable[[Type[T]], Type[T]]:
    """
    Class decorator that implements protocol methods as activity calls.

    Use inside workflows only. Methods listed in ``retry_methods`` run with
    a single-attempt retry policy; the rest use the server default. Proxy
    methods accept positional arguments only.

    Example:
        @temporal_workflow_proxy(
            "checkout.order_repo.postgresql",
            default_timeout_seconds=30,
            retry_methods=["cancel_pending"],
        )
        class WorkflowOrderRepositoryProxy(OrderRepository):
            pass
    """

    def decorator(cls: Type[T]) -> Type[T]:
        timeout = timedelta(seconds=default_timeout_seconds)
        single_attempt = RetryPolicy(maximum_attempts=1)
        retry_set = set(retry_methods or [])
        proxied = []

        for name, declared in protocol_methods(cls).items():
            convert = result_converter(
                inspect.signature(declared).return_annotation
            )

            def make_proxy(
                method_name: str,
                declared_method: Callable[..., Any],
                convert_result: Callable[[Any], Any],
            ) -> Callable[..., Any]:
                activity_name = f"{activity_base}.{method_name}"
                retry_policy = (
                    single_attempt if method_name in retry_set else None
                )

                @functools.wraps(declared_method)
                async def call_activity(
                    self: Any, *args: Any, **kwargs: Any
                ) -> Any:
                    if kwargs:
                        raise TypeError(
                            f"{method_name} must be called with positional "
                            f"arguments inside a workflow"
                        )
                    raw = await workflow.execute_activity(
                        activity_name,
                        args=list(args),
                        start_to_close_timeout=timeout,
                        retry_policy=retry_policy,
                    )
                    return convert_result(raw)

                return call_activity

            setattr(cls, name, make_proxy(name, declared, convert))
            proxied.append(name)

        def __init__(proxy_self: Any) -> None:
            proxy_self.activity_timeout = timeout

        setattr(cls, "__init__", __init__)

        logger.debug(
            "Built workflow proxy",
            extra={
                "proxy_class": cls.__name__,
                "activity_base": activity_base,
                "proxied_methods": proxied,
            },
        )
        return cls

    return decorator
