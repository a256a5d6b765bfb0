"""
Web Application
FastAPI control and status API for regression matches
"""

import json
import logging
import os
import threading
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import List, Dict, Optional
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import EngineRegistry, RunConfig
from .errors import HarnessError
from .results import ResultSink
from .scheduler import MatchScheduler

logger = logging.getLogger(__name__)

app = FastAPI(title="UCI Engine Regression Harness")

registry = EngineRegistry(os.environ.get("HARNESS_REGISTRY", "config/engines.json"))
results_dir = Path(os.environ.get("HARNESS_RESULTS", "results"))


class RunRequest(BaseModel):
    engine_a: str
    engine_b: str
    time_control: str = "10+0.1"
    rounds: int = 1
    games_per_round: int = 1
    concurrency: int = 1
    repeat_colors: bool = True
    max_moves: int = 400
    book_path: Optional[str] = None
    book_order: str = "sequential"
    book_format: str = "epd"
    allow_book_repeat: bool = True
    seed: Optional[int] = None
    sprt: Optional[List[float]] = None
    name: str = "match"


class RunManager:
    """
    Background runs keyed by id

    A run keeps its scheduler only while it plays. Once the report is
    written the scheduler and its game results are dropped and only the
    final status is kept, for the last max_finished runs.
    """

    def __init__(self, max_finished: int = 100):
        self.runs: Dict[str, MatchScheduler] = {}
        self.threads: Dict[str, threading.Thread] = {}
        self.finished: "OrderedDict[str, Dict]" = OrderedDict()
        self.max_finished = max_finished
        self._lock = threading.Lock()

    def start(self, config: RunConfig) -> str:
        config.validate()
        sink = ResultSink(str(results_dir), config.name)
        scheduler = MatchScheduler(config, sink=sink)
        scheduler.build_slots()

        run_id = uuid.uuid4().hex[:12]
        thread = threading.Thread(
            target=self._run,
            args=(run_id, scheduler, sink),
            name=f"run-{run_id}",
            daemon=True
        )
        with self._lock:
            self.runs[run_id] = scheduler
            self.threads[run_id] = thread
        thread.start()

        logger.info(f"Run {run_id} started: {config.engine_a.name} vs {config.engine_b.name}")
        return run_id

    def _run(self, run_id: str, scheduler: MatchScheduler, sink: ResultSink):
        report = None
        try:
            try:
                results = scheduler.run()
            except Exception as e:
                logger.error(f"Run {run_id} failed: {e}", exc_info=True)
                results = scheduler.get_results()
            report = sink.write_report(results, f"{scheduler.config.name}_{run_id}.json").stem
        finally:
            self._retire(run_id, scheduler, report)

    def _retire(self, run_id: str, scheduler: MatchScheduler, report: Optional[str]):
        status = run_status(run_id, scheduler, running=False)
        status["report"] = report
        with self._lock:
            self.runs.pop(run_id, None)
            self.threads.pop(run_id, None)
            self.finished[run_id] = status
            while len(self.finished) > self.max_finished:
                self.finished.popitem(last=False)

    def cancel(self, run_id: str) -> bool:
        """Cancel a live run; False when it is unknown or already finished"""
        with self._lock:
            scheduler = self.runs.get(run_id)
        if scheduler is None:
            return False
        scheduler.cancel()
        return True

    def status(self, run_id: str) -> Dict:
        with self._lock:
            scheduler = self.runs.get(run_id)
            finished = self.finished.get(run_id)
        if scheduler is not None:
            return run_status(run_id, scheduler, running=True)
        if finished is not None:
            return finished
        raise HTTPException(status_code=404, detail="Run not found")

    def all_status(self) -> List[Dict]:
        with self._lock:
            live = list(self.runs.items())
            finished = list(self.finished.values())
        return [run_status(run_id, s, running=True) for run_id, s in live] + finished


runs = RunManager()


def run_status(run_id: str, scheduler: MatchScheduler, running: bool) -> Dict:
    return {
        "id": run_id,
        "name": scheduler.config.name,
        "engine_a": scheduler.config.engine_a.name,
        "engine_b": scheduler.config.engine_b.name,
        "running": running,
        **scheduler.progress(),
        "aggregate": scheduler.aggregator.snapshot().to_dict(),
        "verdict": scheduler.aggregator.final_verdict().value,
    }


# API Endpoints

@app.get("/api/engines")
async def get_engines():
    """Get list of registered engines"""
    return {
        "engines": [
            {
                "name": e.name,
                "path": e.path,
                "margin_ms": e.margin_ms
            }
            for e in registry.list_engines()
        ]
    }


@app.post("/api/runs")
async def start_run(request: RunRequest):
    """Validate a run and start it in the background"""
    data = request.model_dump()
    plan = {
        key: data.pop(key)
        for key in ("rounds", "games_per_round", "concurrency", "repeat_colors", "max_moves")
    }
    sprt = data.pop("sprt")
    data["plan"] = plan
    if sprt:
        if len(sprt) != 2:
            raise HTTPException(status_code=400, detail="sprt needs [elo0, elo1]")
        data["sprt"] = {"elo0": sprt[0], "elo1": sprt[1]}
    data["output_dir"] = str(results_dir)

    try:
        config = RunConfig.from_dict(data, registry)
        run_id = runs.start(config)
    except HarnessError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "message": "Run started",
        "id": run_id,
        "games_total": config.plan.slot_count
    }


@app.get("/api/runs")
async def list_runs():
    return {"runs": runs.all_status()}


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str):
    """Current snapshot of a run"""
    return runs.status(run_id)


@app.delete("/api/runs/{run_id}")
async def cancel_run(run_id: str):
    """Cancel a run; in-flight games stop their engines"""
    if not runs.cancel(run_id):
        runs.status(run_id)
        raise HTTPException(status_code=409, detail="Run already finished")
    return {"message": "Run cancelled", "id": run_id}


@app.get("/api/results")
async def get_results():
    """Get list of result files"""
    if not results_dir.exists():
        return {"results": []}

    files = []
    for file_path in results_dir.glob("*.json"):
        files.append({
            "name": file_path.stem,
            "path": str(file_path),
            "size": file_path.stat().st_size,
            "modified": file_path.stat().st_mtime
        })

    return {"results": files}


@app.get("/api/results/{result_name}")
async def get_result_detail(result_name: str):
    """Get specific result file"""
    result_file = results_dir / f"{result_name}.json"

    if result_file.parent != results_dir or not result_file.exists():
        raise HTTPException(status_code=404, detail="Result not found")

    with open(result_file) as f:
        data = json.load(f)

    return data


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    results_dir.mkdir(exist_ok=True)

    logger.info("Starting regression harness API at http://localhost:8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
