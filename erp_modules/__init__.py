"""
ERP business modules.

Each sub-package owns one business area and follows the same layout:
``models.py`` (frozen DTOs), ``orm.py`` (SQLAlchemy models), ``workflows.py``
(state tables, where the area has a lifecycle) and ``service.py``.
"""
