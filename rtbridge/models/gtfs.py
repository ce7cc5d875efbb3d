"""Tables of a pre-built GTFS schedule database (read-only for this service)."""

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rtbridge.models.base import Base


class Agency(Base):
    __tablename__ = "agency"

    agency_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    agency_timezone: Mapped[str] = mapped_column(String(64), nullable=False)


class Route(Base):
    __tablename__ = "routes"

    route_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    route_short_name: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Stop(Base):
    __tablename__ = "stops"

    stop_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stop_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    stop_lat: Mapped[float] = mapped_column(Float, nullable=False)
    stop_lon: Mapped[float] = mapped_column(Float, nullable=False)


class Trip(Base):
    __tablename__ = "trips"

    trip_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    block_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    shape_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class StopTime(Base):
    __tablename__ = "stop_times"

    trip_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stop_sequence: Mapped[int] = mapped_column(Integer, primary_key=True)
    stop_id: Mapped[str] = mapped_column(String(64), nullable=False)
    arrival_time: Mapped[str | None] = mapped_column(String(8), nullable=True)  # HH:MM:SS, may exceed 24h
    departure_time: Mapped[str | None] = mapped_column(String(8), nullable=True)


class ShapePoint(Base):
    __tablename__ = "shapes"

    shape_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    shape_pt_sequence: Mapped[int] = mapped_column(Integer, primary_key=True)
    shape_pt_lat: Mapped[float] = mapped_column(Float, nullable=False)
    shape_pt_lon: Mapped[float] = mapped_column(Float, nullable=False)


class Calendar(Base):
    __tablename__ = "calendar"

    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    monday: Mapped[int] = mapped_column(Integer, nullable=False)
    tuesday: Mapped[int] = mapped_column(Integer, nullable=False)
    wednesday: Mapped[int] = mapped_column(Integer, nullable=False)
    thursday: Mapped[int] = mapped_column(Integer, nullable=False)
    friday: Mapped[int] = mapped_column(Integer, nullable=False)
    saturday: Mapped[int] = mapped_column(Integer, nullable=False)
    sunday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[str] = mapped_column(String(8), nullable=False)  # YYYYMMDD
    end_date: Mapped[str] = mapped_column(String(8), nullable=False)


class CalendarDate(Base):
    __tablename__ = "calendar_dates"

    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date: Mapped[str] = mapped_column(String(8), primary_key=True)
    exception_type: Mapped[int] = mapped_column(Integer, nullable=False)  # 1=added, 2=removed
