"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status

from .config import settings
from .database import init_db
from .hardware import BaseValveDriver, create_driver
from .notifications import NotificationHub
from .schemas import (
    AutoWaterSettings,
    AutoWaterUpdateRequest,
    EventLogModel,
    ManualControlResponse,
    NotificationModel,
    QuickWaterRequest,
    RainStatusPayload,
    ScheduleCreateRequest,
    ScheduleModel,
    ScheduleUpdateRequest,
    SensorReadingPayload,
    SystemStatusModel,
    ZoneCommandResultModel,
    ZoneHealthRequest,
    ZoneOpenRequest,
    ZoneStatusModel,
)
from .services import (
    AutoWaterMonitor,
    ControlService,
    Dispatcher,
    EventService,
    RunTracker,
    ScheduleService,
    SensorFeed,
    ZoneController,
    ZoneRegistry,
)
from .services.recurrence import local_now

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("irrigation.requests")

# How often the mock driver's probes are sampled into the sensor feed.
SENSOR_SAMPLE_SECONDS = 30


def _result_models(results) -> List[ZoneCommandResultModel]:
    return [
        ZoneCommandResultModel(zone_id=result.zone_id, ok=result.ok, reason=result.reason)
        for result in results
    ]


def create_app(driver: Optional[BaseValveDriver] = None) -> FastAPI:
    """
    Build and configure the FastAPI application. Components are constructed at
    startup so importing `app` has no side effects on the database or hardware.
    """
    def clock() -> datetime:
        return local_now(settings.time_zone)

    async def sensor_sample_loop(control: ControlService, hw: BaseValveDriver) -> None:
        """Background task that feeds driver probe readings into the sensor feed."""
        while True:
            try:
                for zone_id in control.registry.ids():
                    moisture = await asyncio.to_thread(hw.read_moisture, zone_id)
                    temperature = await asyncio.to_thread(hw.read_temperature, zone_id)
                    if moisture is None and temperature is None:
                        continue
                    control.update_reading(
                        zone_id, moisture=moisture, temperature=temperature
                    )
            except Exception as exc:  # log and keep the loop alive
                logger.exception("sensor_sample_loop error: %s", exc)
            await asyncio.sleep(SENSOR_SAMPLE_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        # Ensure schema exists before anything reads the store.
        init_db()
        registry = ZoneRegistry.from_store()
        hw = driver or create_driver(settings.hardware_mode, registry.ids())
        notifier = NotificationHub()
        event_service = EventService()
        controller = ZoneController(
            registry,
            hw,
            event_service,
            notifier=notifier,
            io_timeout=settings.valve_timeout_seconds,
        )
        sensors = SensorFeed(max_age_seconds=settings.sensor_max_age_seconds)
        tracker = RunTracker(event_service)
        schedule_service = ScheduleService(registry, clock)
        dispatcher = Dispatcher(
            schedule_service,
            controller,
            event_service,
            sensors,
            tracker,
            notifier,
            clock=clock,
            minute_seconds=settings.minute_seconds,
        )
        control = ControlService(
            registry,
            controller,
            event_service,
            tracker,
            sensors,
            notifier,
            clock,
            minute_seconds=settings.minute_seconds,
            quick_water_minutes=settings.quick_water_minutes,
        )
        auto_water = AutoWaterMonitor(
            registry,
            controller,
            event_service,
            tracker,
            sensors,
            clock,
            settings=AutoWaterSettings(
                enabled=settings.auto_water_enabled,
                threshold=settings.auto_water_threshold,
                duration_minutes=settings.auto_water_minutes,
                check_interval_minutes=settings.auto_check_minutes,
            ),
            minute_seconds=settings.minute_seconds,
        )

        # Whatever the last process left behind is resolved before new work starts.
        recovered = event_service.recover_interrupted()
        await controller.stop_all(actor="system")

        # Store service objects on the app state for dependency injection.
        app.state.registry = registry
        app.state.notifier = notifier
        app.state.event_service = event_service
        app.state.schedule_service = schedule_service
        app.state.control_service = control
        app.state.dispatcher = dispatcher
        app.state.tracker = tracker
        app.state.controller = controller
        app.state.auto_water = auto_water
        app.state.dispatch_task = asyncio.create_task(dispatcher.run())
        app.state.auto_task = asyncio.create_task(auto_water.run())
        app.state.sensor_task = None
        if settings.hardware_mode == "mock" and driver is None:
            app.state.sensor_task = asyncio.create_task(sensor_sample_loop(control, hw))
        # Let the dispatcher open its command queue before requests arrive.
        await asyncio.sleep(0)

        logger.info(
            "startup zones=%s time_zone=%s hardware=%s recovered=%s",
            len(registry.ids()),
            settings.time_zone,
            settings.hardware_mode,
            recovered,
        )

        yield

        await dispatcher.stop()
        await app.state.dispatch_task
        for task in (app.state.auto_task, app.state.sensor_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # Leave every valve closed; open runs are finished as interrupted.
        await controller.stop_all(actor="system")
        await tracker.wait_all(timeout=5)
        await tracker.cancel_all()
        await notifier.drain()
        logger.info("shutdown complete")

    app = FastAPI(title="Irrigation Engine", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time
        request_logger.info(
            "http method=%s path=%s status=%s duration=%.3fs",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response

    def get_control_service() -> ControlService:
        svc: ControlService = app.state.control_service
        return svc

    def get_schedule_service() -> ScheduleService:
        svc: ScheduleService = app.state.schedule_service
        return svc

    def get_event_service() -> EventService:
        svc: EventService = app.state.event_service
        return svc

    def get_dispatcher() -> Dispatcher:
        dispatcher: Dispatcher = app.state.dispatcher
        return dispatcher

    def get_notifier() -> NotificationHub:
        hub: NotificationHub = app.state.notifier
        return hub

    @app.get("/health")
    async def health(
        svc: ControlService = Depends(get_control_service),
        dispatcher: Dispatcher = Depends(get_dispatcher),
    ) -> Dict[str, Any]:
        zones = svc.list_zones()
        return {
            "status": "ok",
            "dispatcher_running": dispatcher.running,
            "next_due": dispatcher.next_due_at(),
            "pump_on": svc.registry.pump_on,
            "active_runs": app.state.tracker.active,
            "zones": len(zones),
            "zones_in_error": [zone.zone_id for zone in zones if zone.health == "error"],
        }

    # ------------------------------------------------------------------
    # zones
    # ------------------------------------------------------------------

    @app.get("/api/zones", response_model=List[ZoneStatusModel])
    async def api_list_zones(
        svc: ControlService = Depends(get_control_service),
    ) -> List[ZoneStatusModel]:
        return svc.list_zones()

    @app.get("/api/system", response_model=SystemStatusModel)
    async def api_system_status(
        svc: ControlService = Depends(get_control_service),
    ) -> SystemStatusModel:
        return svc.system_status()

    @app.get("/api/zones/{zone_id}", response_model=ZoneStatusModel)
    async def api_get_zone(
        zone_id: str, svc: ControlService = Depends(get_control_service)
    ) -> ZoneStatusModel:
        try:
            return svc.get_zone(zone_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    @app.post("/api/zones/{zone_id}/open", response_model=ManualControlResponse)
    async def api_open_zone(
        zone_id: str,
        payload: ZoneOpenRequest,
        svc: ControlService = Depends(get_control_service),
    ) -> ManualControlResponse:
        try:
            event_id, results = await svc.request_open(zone_id, payload.duration_minutes)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return ManualControlResponse(event_id=event_id, results=_result_models(results))

    @app.post("/api/zones/{zone_id}/close", response_model=ManualControlResponse)
    async def api_close_zone(
        zone_id: str, svc: ControlService = Depends(get_control_service)
    ) -> ManualControlResponse:
        try:
            results = await svc.request_close(zone_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return ManualControlResponse(results=_result_models(results))

    @app.put("/api/zones/{zone_id}/health", response_model=ZoneStatusModel)
    async def api_zone_health(
        zone_id: str,
        payload: ZoneHealthRequest,
        svc: ControlService = Depends(get_control_service),
    ) -> ZoneStatusModel:
        try:
            return await svc.set_health(zone_id, payload.state)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    # ------------------------------------------------------------------
    # manual control
    # ------------------------------------------------------------------

    @app.post("/api/control/quick-water", response_model=ManualControlResponse)
    async def api_quick_water(
        payload: Optional[QuickWaterRequest] = None,
        svc: ControlService = Depends(get_control_service),
    ) -> ManualControlResponse:
        minutes = payload.duration_minutes if payload is not None else None
        event_id, results = await svc.quick_water(minutes)
        return ManualControlResponse(event_id=event_id, results=_result_models(results))

    @app.get("/api/control/auto", response_model=AutoWaterSettings)
    async def api_auto_water_settings() -> AutoWaterSettings:
        monitor: AutoWaterMonitor = app.state.auto_water
        return monitor.settings

    @app.put("/api/control/auto", response_model=AutoWaterSettings)
    async def api_update_auto_water(payload: AutoWaterUpdateRequest) -> AutoWaterSettings:
        monitor: AutoWaterMonitor = app.state.auto_water
        settings_now = monitor.update(payload)
        if settings_now.enabled:
            await monitor.check()
        return settings_now

    @app.post("/api/control/emergency-stop", response_model=ManualControlResponse)
    async def api_emergency_stop(
        svc: ControlService = Depends(get_control_service),
    ) -> ManualControlResponse:
        results = await svc.emergency_stop()
        return ManualControlResponse(results=_result_models(results))

    @app.post("/api/control/reset", response_model=List[ZoneStatusModel])
    async def api_reset(
        svc: ControlService = Depends(get_control_service),
    ) -> List[ZoneStatusModel]:
        return await svc.reset()

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------

    @app.get("/api/schedules", response_model=List[ScheduleModel])
    async def api_list_schedules(
        enabled_only: bool = Query(False),
        svc: ScheduleService = Depends(get_schedule_service),
    ) -> List[ScheduleModel]:
        return svc.list_schedules(enabled_only=enabled_only)

    @app.post(
        "/api/schedules",
        response_model=ScheduleModel,
        status_code=status.HTTP_201_CREATED,
    )
    async def api_create_schedule(
        payload: ScheduleCreateRequest,
        svc: ScheduleService = Depends(get_schedule_service),
    ) -> ScheduleModel:
        try:
            return svc.create_schedule(payload)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    @app.post("/api/schedules/enable-all", response_model=List[ScheduleModel])
    async def api_enable_all(
        svc: ScheduleService = Depends(get_schedule_service),
    ) -> List[ScheduleModel]:
        return svc.set_all_enabled(True)

    @app.post("/api/schedules/disable-all", response_model=List[ScheduleModel])
    async def api_disable_all(
        svc: ScheduleService = Depends(get_schedule_service),
    ) -> List[ScheduleModel]:
        return svc.set_all_enabled(False)

    @app.get("/api/schedules/{schedule_id}", response_model=ScheduleModel)
    async def api_get_schedule(
        schedule_id: str, svc: ScheduleService = Depends(get_schedule_service)
    ) -> ScheduleModel:
        try:
            return svc.get_schedule(schedule_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    @app.put("/api/schedules/{schedule_id}", response_model=ScheduleModel)
    async def api_update_schedule(
        schedule_id: str,
        payload: ScheduleUpdateRequest,
        svc: ScheduleService = Depends(get_schedule_service),
    ) -> ScheduleModel:
        try:
            return svc.update_schedule(schedule_id, payload)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    @app.delete("/api/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def api_delete_schedule(
        schedule_id: str, svc: ScheduleService = Depends(get_schedule_service)
    ) -> Response:
        try:
            svc.delete_schedule(schedule_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/schedules/{schedule_id}/toggle", response_model=ScheduleModel)
    async def api_toggle_schedule(
        schedule_id: str, svc: ScheduleService = Depends(get_schedule_service)
    ) -> ScheduleModel:
        try:
            return svc.toggle_schedule(schedule_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    @app.post(
        "/api/schedules/{schedule_id}/duplicate",
        response_model=ScheduleModel,
        status_code=status.HTTP_201_CREATED,
    )
    async def api_duplicate_schedule(
        schedule_id: str, svc: ScheduleService = Depends(get_schedule_service)
    ) -> ScheduleModel:
        try:
            return svc.duplicate_schedule(schedule_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    @app.post("/api/schedules/{schedule_id}/run", response_model=EventLogModel)
    async def api_run_schedule(
        schedule_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)
    ) -> EventLogModel:
        try:
            return await dispatcher.run_now(schedule_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    # ------------------------------------------------------------------
    # events, sensors, notifications
    # ------------------------------------------------------------------

    @app.get("/api/events", response_model=List[EventLogModel])
    async def api_events(
        schedule_id: Optional[str] = None,
        zone_id: Optional[str] = None,
        event_status: Optional[List[str]] = Query(None, alias="status"),
        action: Optional[List[str]] = Query(None),
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = Query(200, ge=1, le=2000),
        svc: EventService = Depends(get_event_service),
    ) -> List[EventLogModel]:
        return svc.list_events(
            schedule_id=schedule_id,
            zone_id=zone_id,
            statuses=event_status,
            actions=action,
            since=since,
            until=until,
            limit=limit,
        )

    @app.get("/api/events/{event_id}", response_model=EventLogModel)
    async def api_get_event(
        event_id: int, svc: EventService = Depends(get_event_service)
    ) -> EventLogModel:
        try:
            return svc.get_event(event_id)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    @app.put("/api/sensors/rain")
    async def api_rain_status(
        payload: RainStatusPayload,
        svc: ControlService = Depends(get_control_service),
    ) -> Dict[str, Any]:
        changed = svc.set_raining(payload.raining, payload.timestamp)
        return {"raining": payload.raining, "changed": changed}

    @app.post("/api/sensors/{zone_id}")
    async def api_sensor_reading(
        zone_id: str,
        payload: SensorReadingPayload,
        svc: ControlService = Depends(get_control_service),
    ) -> Dict[str, Any]:
        try:
            changed = svc.update_reading(
                zone_id,
                moisture=payload.moisture,
                temperature=payload.temperature,
                timestamp=payload.timestamp,
            )
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        return {"zone_id": zone_id, "changed": changed}

    @app.get("/api/notifications", response_model=List[NotificationModel])
    async def api_notifications(
        since: int = Query(0, ge=0),
        event_type: Optional[str] = None,
        hub: NotificationHub = Depends(get_notifier),
    ) -> List[NotificationModel]:
        return [
            NotificationModel(**message)
            for message in hub.recent(since_sequence=since, event_type=event_type)
        ]

    return app


# Uvicorn expects a module-level variable named "app".
app = create_app()
