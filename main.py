import logging
import os
from datetime import date
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import get_db, init_db
from mailer import MailDeliveryError
from models import GroupBy, PeriodType, SortBy
from scheduler import SchedulerManager
from schemas import (
    BarChartOut,
    BulkImportOut,
    CardSummaryOut,
    CategoryIn,
    CategoryOut,
    CategoryPatch,
    CategoryTreeOut,
    EmailIn,
    ExpenseRecordIn,
    ExpenseRecordOut,
    ExpenseRecordPatch,
    LoginIn,
    LoginOut,
    MessageOut,
    Page,
    PieChartOut,
    RegisterIn,
    ResetPasswordIn,
    SubCategoryIn,
    SubCategoryOut,
    SubCategoryPatch,
    UserOut,
    VerifyCodeIn,
)
from security import CurrentUser, InvalidToken, read_token
from services import (
    AuthenticationError,
    AuthService,
    BulkImportService,
    CategoryService,
    ConflictError,
    DashboardService,
    ExpenseRecordFilters,
    ExpenseRecordService,
    ForbiddenError,
    ImportInsertError,
    InvalidRequestError,
    NoDataError,
    NotFoundError,
    SubCategoryService,
    local_now,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Records API")

ERROR_STATUS: dict[type, int] = {
    NotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
    InvalidRequestError: 400,
    AuthenticationError: 401,
    NoDataError: 404,
    ImportInsertError: 500,
    MailDeliveryError: 502,
}


def _error_response(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS), 500
    )
    return JSONResponse(status_code=status_code, content={"message": str(exc)})


for _exc_class in ERROR_STATUS:
    app.add_exception_handler(_exc_class, _error_response)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "message": "Invalid request parameters.",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def get_current_user(request: Request) -> CurrentUser:
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="Access token missing")
    try:
        return read_token(token)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token") from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


# Auth

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", response_model=MessageOut)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    AuthService(db).start_registration(payload.email, payload.password)
    return {"message": f"Verification code sent to {payload.email}"}


@auth_router.post("/verify-code", response_model=UserOut, status_code=201)
def verify_code(payload: VerifyCodeIn, db: Session = Depends(get_db)):
    user = AuthService(db).verify_registration(payload.email, payload.code)
    return {"id": user.id, "email": user.email, "name": user.email.split("@")[0]}


@auth_router.post("/login", response_model=LoginOut)
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    settings = get_settings()
    user, token = AuthService(db).login(payload.email, payload.password)
    response.set_cookie(
        "token",
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.token_max_age_minutes * 60,
    )
    logger.info(f"login: user={user.id}")
    return {"message": "Login successful", "access_token": token}


@auth_router.post("/logout", response_model=MessageOut)
def logout(response: Response):
    settings = get_settings()
    response.delete_cookie(
        "token", httponly=True, secure=settings.cookie_secure, samesite="strict"
    )
    return {"message": "Logged out successfully"}


@auth_router.get("/me", response_model=UserOut)
def me(
    current: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)
):
    user = AuthService(db).get_user(current.id)
    return {"id": user.id, "email": user.email, "name": user.email.split("@")[0]}


@auth_router.post("/verify-email", response_model=MessageOut)
def verify_email(payload: EmailIn, db: Session = Depends(get_db)):
    AuthService(db).request_password_reset(payload.email)
    return {"message": f"Reset code sent to {payload.email}"}


@auth_router.post("/reset-password", response_model=MessageOut)
def reset_password(payload: ResetPasswordIn, db: Session = Depends(get_db)):
    AuthService(db).reset_password(payload.email, payload.code, payload.password)
    return {"message": "Password reset successfully"}


# Categories

category_router = APIRouter(prefix="/api/category", tags=["category"])


@category_router.get("", response_model=Page[CategoryOut])
def list_categories(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    name: Optional[str] = None,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, current.id).list(page, page_size, name)


@category_router.get("/all", response_model=list[CategoryTreeOut])
def list_all_categories(
    current: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)
):
    return CategoryService(db, current.id).list_all()


@category_router.get("/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, current.id).get(category_id)


@category_router.post("", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, current.id).create(payload)


@category_router.put("/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: str,
    payload: CategoryPatch,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, current.id).update(category_id, payload)


@category_router.delete("/{category_id}", response_model=MessageOut)
def delete_category(
    category_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    CategoryService(db, current.id).delete(category_id)
    return {"message": "Category deleted successfully"}


# Sub-categories

sub_category_router = APIRouter(prefix="/api/sub-category", tags=["sub-category"])


@sub_category_router.get("", response_model=Page[SubCategoryOut])
def list_sub_categories(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    name: Optional[str] = None,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return SubCategoryService(db, current.id).list(page, page_size, name)


@sub_category_router.get("/{sub_category_id}", response_model=SubCategoryOut)
def get_sub_category(
    sub_category_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return SubCategoryService(db, current.id).get(sub_category_id)


@sub_category_router.post("", response_model=SubCategoryOut, status_code=201)
def create_sub_category(
    payload: SubCategoryIn,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return SubCategoryService(db, current.id).create(payload)


@sub_category_router.put("/{sub_category_id}", response_model=SubCategoryOut)
def update_sub_category(
    sub_category_id: str,
    payload: SubCategoryPatch,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return SubCategoryService(db, current.id).update(sub_category_id, payload)


@sub_category_router.delete("/{sub_category_id}", response_model=MessageOut)
def delete_sub_category(
    sub_category_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    SubCategoryService(db, current.id).delete(sub_category_id)
    return {"message": "Subcategory deleted successfully"}


# Expense records

record_router = APIRouter(prefix="/api/expense-record", tags=["expense-record"])


@record_router.get("", response_model=Page[ExpenseRecordOut])
def list_expense_records(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    reason: Optional[str] = None,
    category_id: Optional[str] = None,
    sub_category_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    sort_by: SortBy = SortBy.newest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    filters = ExpenseRecordFilters(
        reason=reason,
        category_id=category_id,
        sub_category_id=sub_category_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
    )
    return ExpenseRecordService(db, current.id).list(filters, page, page_size)


@record_router.post("/bulk", response_model=BulkImportOut)
async def bulk_import_expense_records(
    file: Optional[UploadFile] = File(None),
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if file is None:
        raise InvalidRequestError("CSV file is required.")
    content = await file.read()
    if not content:
        raise InvalidRequestError("Empty file")

    upload_dir = get_settings().upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    token = os.urandom(16).hex()
    upload_path = upload_dir / f"expenses_{token}.csv"
    upload_path.write_bytes(content)

    result = BulkImportService(db, current.id).import_file(upload_path)
    return {
        "inserted_count": result.inserted_count,
        "inserted_records": result.inserted_records,
    }


@record_router.get("/{record_id}", response_model=ExpenseRecordOut)
def get_expense_record(
    record_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ExpenseRecordService(db, current.id).get(record_id)


@record_router.post("", response_model=ExpenseRecordOut, status_code=201)
def create_expense_record(
    payload: ExpenseRecordIn,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ExpenseRecordService(db, current.id).create(payload)


@record_router.put("/{record_id}", response_model=ExpenseRecordOut)
def update_expense_record(
    record_id: str,
    payload: ExpenseRecordPatch,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ExpenseRecordService(db, current.id).update(record_id, payload)


@record_router.delete("/{record_id}", response_model=MessageOut)
def delete_expense_record(
    record_id: str,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ExpenseRecordService(db, current.id).delete(record_id)
    return {"message": "Expense record deleted successfully"}


# Dashboard

dashboard_router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@dashboard_router.get("", response_model=CardSummaryOut)
def dashboard_card(
    current: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)
):
    return DashboardService(db, current.id).card_summary()


@dashboard_router.get("/bar-chart", response_model=BarChartOut)
def dashboard_bar_chart(
    category_id: Optional[str] = None,
    sub_category_id: Optional[str] = None,
    period_type: PeriodType = PeriodType.monthly,
    include_high: bool = False,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return DashboardService(db, current.id).bar_chart(
        category_id=category_id,
        sub_category_id=sub_category_id,
        period_type=period_type,
        include_high=include_high,
    )


@dashboard_router.get("/pie-chart", response_model=PieChartOut)
def dashboard_pie_chart(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    group_by: GroupBy = GroupBy.category,
    include_high: bool = False,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return DashboardService(db, current.id).pie_chart(
        year=year or local_now().year,
        month=month,
        group_by=group_by,
        include_high=include_high,
    )


app.include_router(auth_router)
app.include_router(category_router)
app.include_router(sub_category_router)
app.include_router(record_router)
app.include_router(dashboard_router)
