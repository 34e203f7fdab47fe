"""
Entity Store
============

The Django ORM is the store. This module names the handful of operations
the engine needs from it and funnels every engine read/write through them:

    get(model, pk)                             -> instance | NotFoundError
    insert(model, **fields)                    -> instance
    atomic_increment(model, pk, field, delta)  -> new value
    query(model, filters, order, limit)        -> list

ATOMIC INCREMENT:
-----------------
    UPDATE links_link SET score = score + %s WHERE id = %s

F() pushes the arithmetic into the database, so two concurrent increments
on the same row are both applied. Reading the row and writing back
row.score + 1 from Python loses one of them.

ERRORS:
-------
Any DatabaseError except IntegrityError becomes StoreError. IntegrityError
propagates untouched: the vote ledger turns unique-constraint violations
into ConflictError itself.
"""
import logging
from contextlib import contextmanager

from django.db import DatabaseError, IntegrityError
from django.db.models import F

from .exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)


def label(model) -> str:
    return model._meta.model_name


@contextmanager
def translate_errors(operation: str, target: tuple = None):
    try:
        yield
    except IntegrityError:
        raise
    except DatabaseError as exc:
        logger.exception(f"Store failure during {operation} on {target}")
        raise StoreError(f"Store failure: {exc}", operation, target) from exc


def get(model, pk, operation: str = 'get', for_update: bool = False):
    """
    Fetch one entity by primary key.

    for_update takes a row lock on backends that support it (PostgreSQL);
    it must be called inside transaction.atomic().
    """
    target = (label(model), pk)
    with translate_errors(operation, target):
        queryset = model.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=pk)
        except model.DoesNotExist:
            raise NotFoundError(
                f"{model._meta.verbose_name.capitalize()} {pk} does not exist",
                operation,
                target
            ) from None


def insert(model, operation: str = 'insert', **fields):
    with translate_errors(operation, (label(model), None)):
        return model.objects.create(**fields)


def atomic_increment(model, pk, field: str, delta: int, operation: str = 'atomic_increment') -> int:
    target = (label(model), pk)
    with translate_errors(operation, target):
        updated = model.objects.filter(pk=pk).update(**{field: F(field) + delta})
        if not updated:
            raise NotFoundError(
                f"{model._meta.verbose_name.capitalize()} {pk} does not exist",
                operation,
                target
            )
        # Same transaction as the UPDATE, so this sees our own write
        return model.objects.filter(pk=pk).values_list(field, flat=True).get()


def query(model, filters: dict = None, order=(), limit: int = None,
          select_related=(), operation: str = 'query') -> list:
    with translate_errors(operation, (label(model), None)):
        queryset = model.objects.filter(**(filters or {}))
        if select_related:
            queryset = queryset.select_related(*select_related)
        if order:
            queryset = queryset.order_by(*order)
        if limit is not None:
            queryset = queryset[:limit]
        return list(queryset)
