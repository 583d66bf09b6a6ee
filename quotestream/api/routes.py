from fastapi import APIRouter, HTTPException, Request

router = APIRouter()


def _pipeline(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail='PIPELINE_NOT_STARTED')
    return pipeline


@router.get('/health')
def health(request: Request):
    return _pipeline(request).health()


@router.get('/portfolio')
def get_portfolio(request: Request):
    pipeline = _pipeline(request)
    snapshot = pipeline.store.latest() if pipeline.store is not None else None
    if snapshot is None:
        raise HTTPException(status_code=404, detail='SNAPSHOT_NOT_READY')
    payload = snapshot.model_dump(mode='json')
    payload['unpriced'] = snapshot.unpriced
    return payload


@router.get('/metrics/quote')
def quote_metrics(request: Request):
    return _pipeline(request).metrics()
