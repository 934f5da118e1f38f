#!/usr/bin/env python3
"""
SMC Backtest Engine - Web API
FastAPI server streaming backtest progress as server-sent events
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from smc_config import BacktestConfig, list_presets
from ..backtest.progress import QueueProgressSink
from ..backtest.runner import BacktestRunner
from ..core.data_source import CandleSource, BinanceCandleSource
from ..persistence import JsonResultStore

logger = logging.getLogger(__name__)


class BacktestRequest(BaseModel):
    symbol: str
    preset: Optional[str] = None
    strategy: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    initial_balance: float = 10000.0
    risk_percent: float = 1.0
    use_tick_data: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)

    def to_config(self) -> BacktestConfig:
        data = {
            'symbol': self.symbol,
            'initial_balance': self.initial_balance,
            'risk_percent': self.risk_percent,
            'use_tick_data': self.use_tick_data,
        }
        for key in ('preset', 'strategy', 'start_date', 'end_date'):
            if getattr(self, key) is not None:
                data[key] = getattr(self, key)
        data.update(self.options)
        return BacktestConfig.from_dict(data)


def _format_sse(event: Dict[str, Any]) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"


def create_app(source: Optional[CandleSource] = None, results_dir: str = "backtest_results",
               concurrent_limit: int = 2, queue_size: int = 100) -> FastAPI:
    """Build the API around a caller-provided candle source"""
    app = FastAPI(
        title="SMC Backtest Engine",
        description="Backtests with live progress streaming",
        version="1.0.0"
    )
    store = JsonResultStore(results_dir)
    app.state.store = store
    app.state.source = source
    app.state.runner = None

    def get_runner() -> BacktestRunner:
        # Created lazily so the semaphore binds to the serving loop
        if app.state.runner is None:
            app.state.runner = BacktestRunner(app.state.source or BinanceCandleSource(), store, concurrent_limit)
        return app.state.runner

    def parse_request(request: BacktestRequest) -> BacktestConfig:
        try:
            return request.to_config()
        except (ValueError, TypeError) as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/presets")
    async def presets():
        return {"presets": [p.to_dict() for p in list_presets()]}

    @app.get("/api/status")
    async def status():
        return get_runner().get_status()

    @app.post("/api/backtest")
    async def run_backtest(request: BacktestRequest):
        """Run a backtest and return the full result"""
        config = parse_request(request)
        return await get_runner().run(config)

    @app.post("/api/backtest/stream")
    async def stream_backtest(request: BacktestRequest):
        """Run a backtest, streaming progress events and one terminal complete/error event"""
        config = parse_request(request)
        runner = get_runner()
        run_id = f"{config.symbol}-{uuid.uuid4().hex[:8]}"

        async def event_stream():
            queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
            sink = QueueProgressSink(queue)
            task = asyncio.create_task(runner.run(config, sink, run_id))
            try:
                while True:
                    event = await queue.get()
                    yield _format_sse(event)
                    if event['type'] in ('complete', 'error'):
                        break
                await task
            finally:
                if not task.done():
                    logger.info(f"Client left stream for {run_id}, cancelling")
                    runner.cancel(run_id)
                    task.cancel()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Run-Id": run_id}
        )

    @app.post("/api/backtest/{run_id}/cancel")
    async def cancel_backtest(run_id: str):
        if not get_runner().cancel(run_id):
            raise HTTPException(status_code=404, detail=f"No running backtest {run_id}")
        return {"cancelled": run_id}

    @app.get("/api/backtests/results/{symbol}")
    async def latest_results(symbol: str):
        data = store.load_latest(symbol)
        if data is None:
            raise HTTPException(status_code=404, detail=f"No results for {symbol}")
        return data

    @app.get("/api/backtests/history/{symbol}")
    async def history(symbol: str):
        return {"symbol": symbol, "runs": store.list_history(symbol)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    uvicorn.run(app, host="0.0.0.0", port=8000, reload=False)
