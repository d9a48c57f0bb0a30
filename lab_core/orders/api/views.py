# lab_core/orders/api/views.py
from __future__ import annotations

from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.response import Response

from lab_core.common.api.filtering import apply_filterset
from lab_core.common.api.pagination import paginate
from lab_core.common.api.responses import created, envelope, ok
from lab_core.common.idempotency import get_key, load_response, request_hash, save_response
from lab_core.common.wiring import get_container
from lab_core.orders.api.serializers import (
    AddResultsSerializer,
    CommentWriteSerializer,
    CompleteOrderSerializer,
    OrderCommentSerializer,
    ProcessSampleResultSerializer,
    ProcessSampleSerializer,
    RawTestResultSerializer,
    TestOrderCreateSerializer,
    TestOrderListSerializer,
    TestOrderSerializer,
    TestOrderUpdateSerializer,
)
from lab_core.orders.filters import RawTestResultFilter, TestOrderFilter
from lab_core.orders.models import RawTestResult, TestOrder
from lab_core.orders.selectors import RawTestResultSelector, TestOrderSelector

COMMENT_REF_PARAM = OpenApiParameter(
    name="comment_ref",
    location=OpenApiParameter.PATH,
    required=True,
    type=str,
    description="Comment index (0-based, counts deleted comments) or comment id.",
)


def _truthy(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes")


class TestOrderViewSet(viewsets.ViewSet):
    """
    Thin API layer:
    - idempotency caching on create
    - serializers validation
    - delegates writes to TestOrderService, reads to TestOrderSelector
    """

    serializer_class = TestOrderSerializer
    queryset = TestOrder.objects.none()

    def _read(self, request, pk) -> dict:
        try:
            obj = TestOrderSelector.get_order(order_id=pk)
        except TestOrderSelector.NotFound:
            raise NotFound("Test order not found")
        include_deleted = _truthy(request.query_params.get("include_deleted"))
        return TestOrderSerializer(obj, context={"include_deleted": include_deleted}).data

    @extend_schema(
        request=TestOrderCreateSerializer,
        responses={201: TestOrderSerializer},
        tags=["Test Orders"],
        parameters=[
            OpenApiParameter(name="Idempotency-Key", location=OpenApiParameter.HEADER, required=False, type=str),
        ],
    )
    def create(self, request):
        idem = get_key(request)
        digest = request_hash(request.data)
        if idem:
            cached = load_response(request.user.id, request.method, request.path, idem, digest=digest)
            if cached is not None:
                return Response(cached.data, status=cached.status_code)

        ser = TestOrderCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        order = get_container().orders.create_order(
            actor_user_id=request.user.id,
            patient_id=data["patient_id"],
            instrument_id=data.get("instrument_id") or None,
        )

        out = envelope(self._read(request, order.id), message="Test order created successfully")
        if idem:
            save_response(request.user.id, request.method, request.path, idem, out, digest=digest, status_code=201)
        return Response(out, status=status.HTTP_201_CREATED)

    @extend_schema(
        responses={200: TestOrderListSerializer(many=True)},
        tags=["Test Orders"],
    )
    def list(self, request):
        qs = apply_filterset(TestOrderFilter, request, TestOrderSelector.list_orders())
        return paginate(request, qs, TestOrderListSerializer, message="Test orders retrieved successfully")

    @extend_schema(
        responses={200: TestOrderSerializer},
        tags=["Test Orders"],
        parameters=[
            OpenApiParameter(name="include_deleted", location=OpenApiParameter.QUERY, required=False, type=bool),
        ],
    )
    def retrieve(self, request, pk=None):
        return ok(self._read(request, pk), message="Test order retrieved successfully")

    @extend_schema(request=TestOrderUpdateSerializer, responses={200: TestOrderSerializer}, tags=["Test Orders"])
    def update(self, request, pk=None):
        ser = TestOrderUpdateSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)

        get_container().orders.update_order(actor_user_id=request.user.id, order_id=pk, data=ser.validated_data)
        return ok(self._read(request, pk), message="Test order updated successfully")

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)

    @extend_schema(responses={200: None}, tags=["Test Orders"])
    def destroy(self, request, pk=None):
        get_container().orders.delete_order(actor_user_id=request.user.id, order_id=pk)
        return ok(message="Test order deleted successfully")

    # ----------------------------
    # Comments
    # ----------------------------
    @extend_schema(request=CommentWriteSerializer, responses={201: OrderCommentSerializer}, tags=["Test Orders"])
    @action(detail=True, methods=["post"], url_path="comments")
    def comments(self, request, pk=None):
        ser = CommentWriteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        comment = get_container().orders.add_comment(
            actor_user_id=request.user.id,
            order_id=pk,
            comment_text=ser.validated_data["comment_text"],
        )
        return created(OrderCommentSerializer(comment).data, message="Comment added successfully")

    @extend_schema(
        request=CommentWriteSerializer,
        responses={200: OrderCommentSerializer},
        tags=["Test Orders"],
        parameters=[COMMENT_REF_PARAM],
    )
    @action(detail=True, methods=["put", "delete"], url_path=r"comments/(?P<comment_ref>[^/.]+)")
    def comment_detail(self, request, pk=None, comment_ref=None):
        orders = get_container().orders

        if request.method == "DELETE":
            comment = orders.delete_comment(actor_user_id=request.user.id, order_id=pk, comment_ref=comment_ref)
            return ok(OrderCommentSerializer(comment).data, message="Comment deleted successfully")

        ser = CommentWriteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        comment = orders.update_comment(
            actor_user_id=request.user.id,
            order_id=pk,
            comment_ref=comment_ref,
            comment_text=ser.validated_data["comment_text"],
        )
        return ok(OrderCommentSerializer(comment).data, message="Comment updated successfully")

    # ----------------------------
    # Results / completion
    # ----------------------------
    @extend_schema(request=AddResultsSerializer, responses={200: TestOrderSerializer}, tags=["Test Orders"])
    @action(detail=True, methods=["put"], url_path="results")
    def results(self, request, pk=None):
        ser = AddResultsSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        get_container().orders.add_results(
            actor_user_id=request.user.id,
            order_id=pk,
            results=ser.validated_data["results"],
        )
        return ok(self._read(request, pk), message="Test results added successfully")

    @extend_schema(request=CompleteOrderSerializer, responses={200: TestOrderSerializer}, tags=["Test Orders"])
    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        ser = CompleteOrderSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        get_container().orders.complete(
            actor_user_id=request.user.id,
            order_id=pk,
            reagent_usage=ser.validated_data.get("reagent_usage") or [],
        )
        return ok(self._read(request, pk), message="Test order completed successfully")

    @extend_schema(
        request=ProcessSampleSerializer,
        responses={200: ProcessSampleResultSerializer, 201: ProcessSampleResultSerializer},
        tags=["Test Orders"],
    )
    @action(detail=False, methods=["post"], url_path="process-sample")
    def process_sample(self, request):
        ser = ProcessSampleSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        intake = get_container().orders.process_sample(
            actor_user_id=request.user.id,
            barcode=ser.validated_data["barcode"],
            instrument_id=ser.validated_data["instrument_id"],
        )
        data = {
            "order": self._read(request, intake.order.id),
            "raw_result": RawTestResultSerializer(intake.raw_result).data if intake.raw_result else None,
            "isNew": intake.is_new,
        }
        if intake.is_new:
            return created(data, message="Sample processed and test order created")
        return ok(data, message="Test order already exists for this barcode")


class RawTestResultViewSet(viewsets.ViewSet):
    serializer_class = RawTestResultSerializer
    queryset = RawTestResult.objects.none()

    def _get(self, pk) -> RawTestResult:
        try:
            return RawTestResultSelector.get_raw_result(raw_result_id=pk)
        except RawTestResultSelector.NotFound:
            raise NotFound("Raw test result not found")

    @extend_schema(responses={200: RawTestResultSerializer(many=True)}, tags=["Raw Test Results"])
    def list(self, request):
        qs = apply_filterset(RawTestResultFilter, request, RawTestResultSelector.list_raw_results())
        return paginate(request, qs, RawTestResultSerializer, message="Raw test results retrieved successfully")

    @extend_schema(responses={200: RawTestResultSerializer}, tags=["Raw Test Results"])
    def retrieve(self, request, pk=None):
        return ok(RawTestResultSerializer(self._get(pk)).data)

    @extend_schema(responses={200: None}, tags=["Raw Test Results"])
    def destroy(self, request, pk=None):
        get_container().raw_results.manual_delete(actor_user_id=request.user.id, raw_result_id=pk)
        return ok(message="Raw test result deleted successfully")

    @extend_schema(request=None, responses={200: TestOrderSerializer}, tags=["Raw Test Results"])
    @action(detail=True, methods=["post"], url_path="sync")
    def sync(self, request, pk=None):
        order = get_container().orders.sync_raw_result(actor_user_id=request.user.id, raw_result_id=pk)
        obj = TestOrderSelector.get_order(order_id=order.id)
        return ok(TestOrderSerializer(obj).data, message="Raw test result synced successfully")
