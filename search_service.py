"""
TrustWork Search Service
Filtered, sorted and paginated search over open assignments and freelancers,
plus execution of saved searches
"""

import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy import and_, or_
import logging

logger = logging.getLogger(__name__)

POSTED_WITHIN_DAYS = {'day': 1, 'week': 7, 'month': 30}
EXPERIENCE_LEVELS = ('entry', 'intermediate', 'expert')
SEARCH_TYPES = ('assignments', 'freelancers')

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class SearchService:
    """
    Builds SQLAlchemy queries from the filter dictionaries the search API accepts
    """

    ASSIGNMENT_SORTS = ('created_at_desc', 'created_at_asc', 'budget_desc', 'budget_asc', 'title_asc', 'title_desc')
    FREELANCER_SORTS = ('rating_desc', 'rate_asc', 'rate_desc', 'jobs_completed_desc')

    def __init__(self, db, User, Gig):
        """
        Args:
            db: SQLAlchemy database instance
            User: User model class
            Gig: Gig model class
        """
        self.db = db
        self.User = User
        self.Gig = Gig

    @staticmethod
    def _page_args(page, page_size):
        try:
            page = max(1, int(page or 1))
        except (TypeError, ValueError):
            page = 1
        try:
            page_size = int(page_size or DEFAULT_PAGE_SIZE)
        except (TypeError, ValueError):
            page_size = DEFAULT_PAGE_SIZE
        return page, min(max(1, page_size), MAX_PAGE_SIZE)

    @staticmethod
    def _paginate(query, page, page_size):
        total = query.count()
        rows = query.offset((page - 1) * page_size).limit(page_size).all()
        return {
            'data': [row.to_dict() for row in rows],
            'total': total,
            'page': page,
            'page_size': page_size,
            'has_more': page * page_size < total
        }

    @staticmethod
    def _skill_conditions(column, skills):
        """Skills are stored as JSON text, so match each quoted name"""
        conditions = []
        for skill in skills or []:
            skill = str(skill).strip()
            if skill:
                conditions.append(column.ilike(f'%"{skill}"%'))
        return conditions

    def search_assignments(self, filters: Optional[Dict] = None, page=1, page_size=DEFAULT_PAGE_SIZE,
                           sort_by: str = 'created_at_desc') -> Dict:
        """
        Search open gigs

        Filters: query, province, budget_min, budget_max, skills, experience_level,
        remote_only, category, posted_within (day, week, month)
        """
        filters = filters or {}
        Gig = self.Gig
        page, page_size = self._page_args(page, page_size)
        conditions = [Gig.status == 'open']

        text = (filters.get('query') or '').strip()
        if text:
            pattern = f'%{text}%'
            conditions.append(or_(Gig.title.ilike(pattern), Gig.description.ilike(pattern)))

        if filters.get('province'):
            conditions.append(Gig.province == filters['province'])

        if filters.get('category'):
            conditions.append(Gig.category == filters['category'])

        # A gig matches when its budget range overlaps the requested range
        if filters.get('budget_min') is not None:
            conditions.append(Gig.budget_max >= float(filters['budget_min']))
        if filters.get('budget_max') is not None:
            conditions.append(Gig.budget_min <= float(filters['budget_max']))

        conditions.extend(self._skill_conditions(Gig.required_skills, filters.get('skills')))

        if filters.get('experience_level'):
            conditions.append(Gig.experience_level == filters['experience_level'])

        if filters.get('remote_only'):
            conditions.append(Gig.remote_allowed.is_(True))

        days = POSTED_WITHIN_DAYS.get(filters.get('posted_within'))
        if days:
            conditions.append(Gig.created_at >= datetime.utcnow() - timedelta(days=days))

        order = {
            'created_at_desc': Gig.created_at.desc(),
            'created_at_asc': Gig.created_at.asc(),
            'budget_desc': Gig.budget_max.desc(),
            'budget_asc': Gig.budget_min.asc(),
            'title_asc': Gig.title.asc(),
            'title_desc': Gig.title.desc()
        }.get(sort_by, Gig.created_at.desc())

        query = Gig.query.filter(and_(*conditions)).order_by(order, Gig.id.desc())
        return self._paginate(query, page, page_size)

    def search_freelancers(self, filters: Optional[Dict] = None, page=1, page_size=DEFAULT_PAGE_SIZE,
                           sort_by: str = 'rating_desc') -> Dict:
        """
        Search freelancer profiles

        Filters: query, skills, province, min_rating, verified_only, experience_level,
        rate_min, rate_max
        """
        filters = filters or {}
        User = self.User
        page, page_size = self._page_args(page, page_size)
        conditions = [User.role.in_(['freelancer', 'both'])]

        text = (filters.get('query') or '').strip()
        if text:
            pattern = f'%{text}%'
            conditions.append(or_(User.full_name.ilike(pattern), User.username.ilike(pattern), User.bio.ilike(pattern)))

        conditions.extend(self._skill_conditions(User.skills, filters.get('skills')))

        if filters.get('province'):
            conditions.append(User.province == filters['province'])
        if filters.get('min_rating') is not None:
            conditions.append(User.rating >= float(filters['min_rating']))
        if filters.get('verified_only'):
            conditions.append(User.is_verified.is_(True))
        if filters.get('experience_level'):
            conditions.append(User.experience_level == filters['experience_level'])
        if filters.get('rate_min') is not None:
            conditions.append(User.hourly_rate >= float(filters['rate_min']))
        if filters.get('rate_max') is not None:
            conditions.append(User.hourly_rate <= float(filters['rate_max']))

        order = {
            'rating_desc': User.rating.desc(),
            'rate_asc': User.hourly_rate.asc(),
            'rate_desc': User.hourly_rate.desc(),
            'jobs_completed_desc': User.completed_gigs.desc()
        }.get(sort_by, User.rating.desc())

        query = User.query.filter(and_(*conditions)).order_by(order, User.id.asc())
        return self._paginate(query, page, page_size)

    def execute_saved_search(self, saved_search, page=1, page_size=DEFAULT_PAGE_SIZE) -> Dict:
        """Run a saved search and stamp when it last ran"""
        filters = json.loads(saved_search.filters or '{}')
        sort_by = filters.pop('sort_by', None)

        if saved_search.search_type == 'freelancers':
            result = self.search_freelancers(filters, page, page_size, sort_by or 'rating_desc')
        else:
            result = self.search_assignments(filters, page, page_size, sort_by or 'created_at_desc')

        saved_search.last_run_at = datetime.utcnow()
        logger.info(f"Saved search {saved_search.id} returned {result['total']} results")
        return result

    def suggest_skills(self, prefix: str, limit: int = 10) -> List[str]:
        """Skill names starting with prefix, drawn from open gigs and freelancer profiles"""
        prefix = (prefix or '').strip().lower()
        if not prefix:
            return []

        pattern = f'%{prefix}%'
        sources = [g.required_skills for g in self.Gig.query.filter(self.Gig.required_skills.ilike(pattern)).limit(200)]
        sources += [u.skills for u in self.User.query.filter(self.User.skills.ilike(pattern)).limit(200)]

        found = {}
        for raw in sources:
            try:
                skills = json.loads(raw) if raw else []
            except json.JSONDecodeError:
                logger.warning("Skipping malformed skills list during suggestion lookup")
                continue
            for skill in skills:
                if isinstance(skill, str) and skill.lower().startswith(prefix):
                    found.setdefault(skill.lower(), skill)
        return sorted(found.values(), key=str.lower)[:limit]


def validate_saved_search(data):
    """Validate the body of a create/update saved-search request"""
    name = (data.get('name') or '').strip()
    if not name or len(name) > 100:
        return False, "Name must be between 1 and 100 characters"
    if data.get('search_type') not in SEARCH_TYPES:
        return False, "search_type must be 'assignments' or 'freelancers'"
    if not isinstance(data.get('filters', {}), dict):
        return False, "filters must be an object"
    posted_within = (data.get('filters') or {}).get('posted_within')
    if posted_within and posted_within not in POSTED_WITHIN_DAYS:
        return False, "posted_within must be day, week or month"
    return True, "Saved search is valid"
