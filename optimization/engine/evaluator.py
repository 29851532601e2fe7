"""Worker-side evaluation of backtest requests for the optimizer pool."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Mapping, Optional, Union

from backtest.blocks import blocks_from_payload
from backtest.engine import BacktestConfig, run_backtest
from backtest.errors import DataError
from backtest.prices import InMemoryPriceOracle, PriceOracle
from optimization.parameters import apply_parameters

logger = logging.getLogger(__name__)

REQUEST_BACKTEST = 'BACKTEST'
RESPONSE_RESULT = 'RESULT'
RESPONSE_ERROR = 'ERROR'

# ---------------------------------------------------------------------------
# Worker-scoped state
# ---------------------------------------------------------------------------

PRICE_DATA: Optional[PriceOracle] = None


def init_worker(price_data: Union[PriceOracle, Mapping[str, Any]], log_level: int = logging.WARNING) -> None:
    """Install the shared price oracle in this worker."""
    global PRICE_DATA
    PRICE_DATA = price_data if isinstance(price_data, PriceOracle) else InMemoryPriceOracle(price_data)
    logging.getLogger('backtest').setLevel(log_level)


def build_request(request_id: str, blocks, parameters, config: BacktestConfig) -> Dict[str, Any]:
    return {
        'type': REQUEST_BACKTEST,
        'id': request_id,
        'blocks': [block.to_dict() for block in blocks],
        'parameters': parameters,
        'config': config.to_dict(),
    }


def _error_response(request_id: Any, parameters: Any, message: str, error_type: str) -> Dict[str, Any]:
    return {
        'type': RESPONSE_ERROR,
        'id': request_id,
        'parameters': parameters,
        'error': message,
        'error_type': error_type,
    }


def run_backtest_task(request: Mapping[str, Any]) -> Dict[str, Any]:
    """Evaluate one request; failures come back as ``ERROR`` messages, never raised."""
    request_id = request.get('id')
    parameters = request.get('parameters') or {}
    if request.get('type') != REQUEST_BACKTEST:
        return _error_response(request_id, parameters, f"Unknown request type: {request.get('type')}", 'ValueError')

    try:
        if PRICE_DATA is None:
            raise DataError('Worker price data not initialised')
        blocks = apply_parameters(blocks_from_payload(request['blocks']), parameters)
        config = BacktestConfig.from_dict(request['config'])
        result = run_backtest(blocks, PRICE_DATA, config)
    except Exception as exc:
        logger.debug("Request %s failed:\n%s", request_id, traceback.format_exc())
        return _error_response(request_id, parameters, str(exc), type(exc).__name__)

    return {
        'type': RESPONSE_RESULT,
        'id': request_id,
        'parameters': parameters,
        'result': result.to_dict(),
    }
