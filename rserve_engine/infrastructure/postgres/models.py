#rserve_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for the metrics time-series tables."""

from sqlalchemy import BigInteger, Column, DateTime, Float, Index, Integer, String

from rserve_engine.infrastructure.postgres.database import Base


class AppMetricsPointORM(Base):
    """
    Per-app resource usage, one row per app per collection cycle.

    Indexes:
    - collected_at for retention pruning and system-wide scans
    - (app_id, collected_at) for per-app windows
    """

    __tablename__ = "app_metrics_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(String(64), nullable=False)

    cpu_percent = Column(Float, nullable=False)
    memory_mb = Column(Float, nullable=False)
    memory_limit_mb = Column(Float, nullable=False)
    network_rx_bytes = Column(BigInteger, nullable=False)
    network_tx_bytes = Column(BigInteger, nullable=False)
    requests_per_min = Column(Float, nullable=True)
    containers = Column(Integer, nullable=False)

    collected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('app_metrics_collected_at_idx', 'collected_at'),
        Index('app_metrics_app_collected_idx', 'app_id', 'collected_at'),
    )

    def __repr__(self) -> str:
        return (
            f"<AppMetricsPointORM(app_id={self.app_id}, "
            f"cpu={self.cpu_percent}, collected_at={self.collected_at})>"
        )


class SystemMetricsPointORM(Base):
    """System-wide resource usage, one row per collection cycle."""

    __tablename__ = "system_metrics_points"

    id = Column(Integer, primary_key=True, autoincrement=True)

    cpu_percent = Column(Float, nullable=False)
    memory_mb = Column(Float, nullable=False)
    memory_limit_mb = Column(Float, nullable=False)
    network_rx_bytes = Column(BigInteger, nullable=False)
    network_tx_bytes = Column(BigInteger, nullable=False)
    requests_per_min = Column(Float, nullable=True)
    active_containers = Column(Integer, nullable=False)
    active_apps = Column(Integer, nullable=False)

    collected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('system_metrics_collected_at_idx', 'collected_at'),
    )


class AppStatusPointORM(Base):
    """Status observations feeding the uptime timelines."""

    __tablename__ = "app_status_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('status_points_collected_at_idx', 'collected_at'),
        Index('status_points_app_collected_idx', 'app_id', 'collected_at'),
    )
