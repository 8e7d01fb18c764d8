"""Shared request payloads, model outputs and in-memory doubles for the test suite."""

from pathlib import Path

from app.core.schemas import GenerateRequest, KnowledgeEntry, KnowledgePriority

CORPUS_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "corpus.json"


CUSTOMER_SCHEMA = {
    "type": "db_schema",
    "table": "customer",
    "columns": [
        {"name": "id", "column_type": "INTEGER", "nullable": False, "pk": True},
        {"name": "name", "column_type": "VARCHAR(100)", "nullable": False},
        {"name": "email", "column_type": "VARCHAR(200)"},
    ],
}

VALID_CUSTOMER_LIST = """Here is the screen.

--- XML ---
<screen id="customer_list">
  <xlinkdataset id="ds_customer" columns="id:INT;name:STRING;email:STRING"/>
  <grid id="grid_customer" link_data="ds_customer">
    <column id="name" header="Name"/>
    <column id="email" header="Email"/>
  </grid>
  <pushbutton id="btn_search" on_click="eventfunc:fn_search()"/>
  <pushbutton id="btn_add" on_click="eventfunc:fn_add()"/>
  <pushbutton id="btn_delete" on_click="eventfunc:fn_delete()"/>
</screen>
--- JS ---
function fn_search() {
  // TODO: set the customer search service id
  ds_customer.load("TODO_SEARCH_SERVICE");
}

function fn_add() {
  ds_customer.addrow();
}

function fn_delete() {
  ds_customer.deleterow(ds_customer.getpos());
}
"""

XML_ONLY_CUSTOMER_LIST = VALID_CUSTOMER_LIST.split("--- JS ---")[0]

MEMBER_SCHEMA = {
    "type": "db_schema",
    "table": "TB_MEMBER",
    "columns": [
        {"name": "MEMBER_ID", "column_type": "VARCHAR(20)", "nullable": False, "pk": True},
        {"name": "MEMBER_NAME", "column_type": "VARCHAR(100)", "nullable": False},
    ],
}

VALID_MEMBER_CRUD = """--- CONTROLLER ---
```java
@RestController
@RequestMapping("/member")
public class MemberController {
    private final MemberService memberService;

    public MemberController(MemberService memberService) {
        this.memberService = memberService;
    }
}
```
--- SERVICE ---
public interface MemberService {
    void createMember(MemberDTO dto);
    MemberDTO getMemberById(String memberId);
    List<MemberDTO> getMemberList();
    void updateMember(MemberDTO dto);
    void deleteMember(String memberId);
}
--- SERVICE_IMPL ---
@Service
public class MemberServiceImpl implements MemberService {
    private final MemberMapper memberMapper;

    public MemberServiceImpl(MemberMapper memberMapper) {
        this.memberMapper = memberMapper;
    }
}
--- DTO ---
@Data
public class MemberDTO {
    private String memberId;
    private String memberName;
}
--- MAPPER ---
@Mapper
public interface MemberMapper {
    int insert(MemberDTO dto);
    MemberDTO selectById(String memberId);
    List<MemberDTO> selectList();
    int update(MemberDTO dto);
    int delete(String memberId);
}
--- MAPPER_XML ---
<mapper namespace="com.company.project.mapper.MemberMapper">
  <select id="selectById" parameterType="String" resultType="MemberDTO">
    SELECT MEMBER_ID, MEMBER_NAME FROM TB_MEMBER WHERE MEMBER_ID = #{memberId}
  </select>
  <select id="selectList" resultType="MemberDTO">
    SELECT MEMBER_ID, MEMBER_NAME FROM TB_MEMBER
  </select>
</mapper>
"""


def make_request(product="xframe5-ui", input_data=None, **extra) -> GenerateRequest:
    payload = {"product": product, "input": input_data or CUSTOMER_SCHEMA}
    payload.update(extra)
    return GenerateRequest.model_validate(payload)


def make_entry(entry_id, tags, priority=KnowledgePriority.MEDIUM, tokens=10, name=None) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=entry_id,
        name=name or f"entry-{entry_id}",
        category="component",
        relevance_tags=frozenset(tags),
        priority=priority,
        token_estimate=tokens,
        content=f"Reference text {entry_id}",
    )


class RecordingSink:
    """Audit sink that keeps records in memory."""

    def __init__(self, fail=False):
        self.records = []
        self.fail = fail

    async def write(self, record):
        if self.fail:
            raise RuntimeError("audit database is down")
        self.records.append(record)


async def no_sleep(_delay):
    return None
